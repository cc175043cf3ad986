"""Mine candidate wallets that were net buyers in W1 and net sellers in W2."""

from __future__ import annotations

import logging
from datetime import datetime

import duckdb
import pandas as pd

from whaletrace.models.schema import Candidate
from whaletrace.storage.database import get_priced_swaps

logger = logging.getLogger(__name__)

_EMPTY = pd.DataFrame(columns=["trader", "net", "volume", "swaps", "chains"])


def _aggregate(swaps: pd.DataFrame, sign: int) -> pd.DataFrame:
    """Per-trader net flow, volume, swap count and chain set.

    sign=+1 gives usd_out - usd_in (accumulation), sign=-1 gives usd_in - usd_out (distribution).
    """
    if swaps.empty:
        return _EMPTY.copy()
    df = swaps.copy()
    df["trader"] = df["trader"].str.lower()
    for col in ("usd_in", "usd_out", "usd_notional"):
        df[col] = df[col].astype(float).fillna(0.0)
    df["net"] = sign * (df["usd_out"] - df["usd_in"])

    grouped = df.groupby("trader").agg(
        net=("net", "sum"),
        volume=("usd_notional", "sum"),
        swaps=("net", "size"),
    ).reset_index()
    chains = {trader: {int(c) for c in group} for trader, group in df.groupby("trader")["chain_id"]}
    grouped["chains"] = [sorted(chains[t]) for t in grouped["trader"]]
    return grouped


def mine_candidates(
    conn: duckdb.DuckDBPyConnection,
    w1: tuple[datetime, datetime],
    w2: tuple[datetime, datetime],
    usd_min: float,
    chain_ids: list[int] | None = None,
) -> list[Candidate]:
    """Wallets whose W1 net buy and W2 net sell both reach ``usd_min``, best W2 first."""
    w1_stats = _aggregate(get_priced_swaps(conn, w1[0], w1[1], chain_ids), sign=1)
    w2_stats = _aggregate(get_priced_swaps(conn, w2[0], w2[1], chain_ids), sign=-1)
    if w1_stats.empty or w2_stats.empty:
        logger.info("No priced swaps in one of the mining windows")
        return []

    merged = w1_stats.merge(w2_stats, on="trader", suffixes=("_w1", "_w2"))
    merged = merged[(merged["net_w1"] >= usd_min) & (merged["net_w2"] >= usd_min)]
    merged = merged.sort_values("net_w2", ascending=False, kind="stable")

    candidates = [
        Candidate(
            wallet=row.trader,
            w1_net=float(row.net_w1),
            w1_volume=float(row.volume_w1),
            w1_swaps=int(row.swaps_w1),
            w2_net=float(row.net_w2),
            w2_volume=float(row.volume_w2),
            w2_swaps=int(row.swaps_w2),
            chains=sorted(set(row.chains_w1) | set(row.chains_w2)),
        )
        for row in merged.itertuples(index=False)
    ]
    logger.info("Mined %d candidates (usd_min=$%.0f)", len(candidates), usd_min)
    return candidates
