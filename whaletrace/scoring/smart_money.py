"""Composite smart money score over mined candidates.

Seven components, each clamped to 0-1 against a fixed denominator:

- t1_pnl: realized P&L / $50k
- t7_pnl: W1 + W2 net flow / $100k
- win_rate: disposals that closed a lot / trades
- trade_ratio: share of swaps that happened in W2
- impact: 1 - total volume / $2M (smaller footprint scores higher)
- repeatability: chains traded / 4
- liquidity: total volume / $1M
"""

from __future__ import annotations

import logging

from whaletrace.models.schema import Candidate, CandidateScore, PnlResult, ScoreComponents

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: dict[str, float] = {
    "t1_pnl": 0.30,
    "t7_pnl": 0.20,
    "win_rate": 0.10,
    "trade_ratio": 0.15,
    "impact": 0.10,
    "repeatability": 0.10,
    "liquidity": 0.05,
}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


def merge_weights(weights: dict[str, float] | None = None) -> dict[str, float]:
    """Overlay partial weights on the defaults and rescale so they sum to 1.

    A merged total of zero falls back to the defaults.
    """
    if not weights:
        return dict(DEFAULT_WEIGHTS)
    unknown = set(weights) - set(DEFAULT_WEIGHTS)
    if unknown:
        raise ValueError(f"Unknown score weights: {', '.join(sorted(unknown))}")

    merged = {**DEFAULT_WEIGHTS, **{k: float(v) for k, v in weights.items()}}
    total = sum(merged.values())
    if total == 0:
        return dict(DEFAULT_WEIGHTS)
    return {name: value / total for name, value in merged.items()}


def normalize_metrics(candidate: Candidate, pnl: PnlResult) -> tuple[ScoreComponents, dict[str, float]]:
    net_gain = candidate.w1_net + candidate.w2_net
    total_volume = candidate.w1_volume + candidate.w2_volume
    trades = pnl.trades or 1
    swaps = candidate.w1_swaps + candidate.w2_swaps or 1

    normalized = ScoreComponents(
        t1_pnl=_clamp(pnl.realized / 50_000),
        t7_pnl=_clamp(net_gain / 100_000),
        win_rate=_clamp(pnl.realized_tokens / trades),
        trade_ratio=_clamp(candidate.w2_swaps / swaps),
        impact=_clamp(1 - total_volume / 2_000_000),
        repeatability=_clamp(len(candidate.chains) / 4),
        liquidity=_clamp(total_volume / 1_000_000),
    )
    raw = {
        "realized": pnl.realized,
        "trades": float(pnl.trades),
        "realized_tokens": float(pnl.realized_tokens),
        "w1_net": candidate.w1_net,
        "w2_net": candidate.w2_net,
        "w1_volume": candidate.w1_volume,
        "w2_volume": candidate.w2_volume,
        "chain_count": float(len(candidate.chains)),
    }
    return normalized, raw


def score_candidate(
    candidate: Candidate,
    pnl: PnlResult,
    weights: dict[str, float] | None = None,
) -> CandidateScore:
    weight_map = merge_weights(weights)
    normalized, raw = normalize_metrics(candidate, pnl)
    components = normalized.model_dump()
    score = sum(components[name] * weight for name, weight in weight_map.items())
    return CandidateScore(wallet=candidate.wallet, score=score, normalized=normalized, raw=raw)


def rank_candidates(
    candidates: list[Candidate],
    pnl: dict[str, PnlResult],
    weights: dict[str, float] | None = None,
    limit: int | None = None,
) -> list[CandidateScore]:
    """Score every candidate and sort descending. Ties keep input order."""
    scores = [
        score_candidate(c, pnl.get(c.wallet.lower()) or pnl.get(c.wallet) or PnlResult(), weights)
        for c in candidates
    ]
    ranked = sorted(scores, key=lambda s: s.score, reverse=True)
    if limit is not None:
        ranked = ranked[:limit]
    logger.info("Ranked %d candidates", len(ranked))
    return ranked
