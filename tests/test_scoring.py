from datetime import timedelta

import pytest

from tests.conftest import T0, TOKEN_A, USDC
from whaletrace.models.schema import ActivityEvent, Candidate, PnlResult
from whaletrace.scoring.mining import mine_candidates
from whaletrace.scoring.smart_money import DEFAULT_WEIGHTS, merge_weights, rank_candidates, score_candidate
from whaletrace.storage.database import insert_events

ALICE = "0x000000000000000000000000000000000000a11c"
BOB = "0x0000000000000000000000000000000000000b0b"
CAROL = "0x00000000000000000000000000000000000ca201"


def _candidate(wallet: str, **kwargs) -> Candidate:
    defaults = dict(w1_net=20_000.0, w1_volume=40_000.0, w1_swaps=2, w2_net=30_000.0, w2_volume=60_000.0,
                    w2_swaps=3, chains=[1])
    defaults.update(kwargs)
    return Candidate(wallet=wallet, **defaults)


def test_weights_sum_to_one():
    assert sum(merge_weights().values()) == pytest.approx(1.0)
    merged = merge_weights({"t1_pnl": 0.6})
    assert sum(merged.values()) == pytest.approx(1.0)
    assert merged["t1_pnl"] > DEFAULT_WEIGHTS["t1_pnl"]


def test_zero_weights_fall_back_to_defaults():
    assert merge_weights({name: 0.0 for name in DEFAULT_WEIGHTS}) == DEFAULT_WEIGHTS


def test_unknown_weight_is_rejected():
    with pytest.raises(ValueError, match="sharpe"):
        merge_weights({"sharpe": 1.0})


def test_single_weight_isolates_component():
    weights = {name: 0.0 for name in DEFAULT_WEIGHTS}
    weights["t1_pnl"] = 1.0
    result = score_candidate(_candidate(ALICE), PnlResult(realized=12_500.0, trades=4), weights)
    assert result.normalized.t1_pnl == pytest.approx(0.25)
    assert result.score == pytest.approx(result.normalized.t1_pnl)


def test_components_are_clamped():
    candidate = _candidate(ALICE, w1_volume=3_000_000.0, w2_volume=0.0, chains=[1, 10, 137, 8453, 42161])
    result = score_candidate(candidate, PnlResult(realized=-5_000.0, trades=0, realized_tokens=0))
    normalized = result.normalized
    assert normalized.t1_pnl == 0.0
    assert normalized.impact == 0.0
    assert normalized.liquidity == 1.0
    assert normalized.repeatability == 1.0
    assert 0.0 <= result.score <= 1.0


def test_ranking_is_descending_and_stable_for_ties():
    candidates = [_candidate(ALICE), _candidate(BOB), _candidate(CAROL, w2_net=90_000.0)]
    ranked = rank_candidates(candidates, {})
    assert [s.wallet for s in ranked] == [CAROL, ALICE, BOB]
    assert ranked[1].score == ranked[2].score


def test_ranking_limit_and_pnl_lookup():
    candidates = [_candidate(ALICE), _candidate(BOB)]
    pnl = {BOB: PnlResult(realized=50_000.0, trades=2, realized_tokens=2)}
    ranked = rank_candidates(candidates, pnl, limit=1)
    assert [s.wallet for s in ranked] == [BOB]
    assert ranked[0].raw["realized"] == 50_000.0


def _priced_swap(n: int, trader: str, hours: float, usd_in: float, usd_out: float, chain_id: int = 1) -> ActivityEvent:
    return ActivityEvent(
        chain_id=chain_id,
        tx_hash=f"0x{n:064x}",
        log_index=0,
        block_number=1_000 + n,
        timestamp=T0 + timedelta(hours=hours),
        kind="swap",
        dex="univ2",
        trader=trader,
        counterparty="0x3333333333333333333333333333333333333333",
        asset_in=USDC,
        amount_in_raw=1,
        asset_out=TOKEN_A,
        amount_out_raw=1,
        usd_in=usd_in,
        usd_out=usd_out,
        usd_notional=max(usd_in, usd_out),
    )


def test_mine_candidates_requires_both_windows(conn):
    insert_events(conn, [
        _priced_swap(1, ALICE, -1.5, usd_in=1_000.0, usd_out=20_000.0),
        _priced_swap(2, ALICE, 0.5, usd_in=30_000.0, usd_out=1_000.0, chain_id=8453),
        _priced_swap(3, BOB, -1.0, usd_in=500.0, usd_out=15_000.0),
        _priced_swap(4, BOB, 1.0, usd_in=16_000.0, usd_out=1_000.0),
        # only active in W1
        _priced_swap(5, CAROL, -0.5, usd_in=0.0, usd_out=50_000.0),
        # W2 swap outside both windows
        _priced_swap(6, CAROL, 5.0, usd_in=50_000.0, usd_out=0.0),
    ])
    w1 = (T0 - timedelta(hours=2), T0)
    w2 = (T0, T0 + timedelta(hours=2))

    candidates = mine_candidates(conn, w1, w2, usd_min=10_000.0)

    assert [c.wallet for c in candidates] == [ALICE, BOB]
    alice = candidates[0]
    assert alice.w1_net == pytest.approx(19_000.0)
    assert alice.w2_net == pytest.approx(29_000.0)
    assert alice.w1_swaps == alice.w2_swaps == 1
    assert alice.chains == [1, 8453]

    assert mine_candidates(conn, w1, w2, usd_min=20_000.0) == []
    assert [c.wallet for c in mine_candidates(conn, w1, w2, 10_000.0, chain_ids=[1])] == [BOB]


def test_mine_candidates_with_empty_store(conn):
    assert mine_candidates(conn, (T0 - timedelta(hours=1), T0), (T0, T0 + timedelta(hours=1)), 1.0) == []
