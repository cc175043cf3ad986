"""Export analysis snapshots and ranked candidates as CSV/Parquet."""

from __future__ import annotations

import logging
from pathlib import Path

import duckdb
import pandas as pd

from whaletrace.models.schema import CandidateScore
from whaletrace.storage.database import get_analyses

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = [
    "wallet_id",
    "wallet_address",
    "simple_return",
    "adjusted_return",
    "net_cash_flow_usd",
    "value_t0_usd",
    "value_t1_usd",
    "token_count",
    "funding_heavy",
    "stable_heavy",
    "price_missing",
    "notes",
    "analyzed_at",
]


def _write(df: pd.DataFrame, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if str(output_path).endswith(".csv"):
        df.to_csv(output_path, index=False, float_format="%.4f")
    else:
        df.to_parquet(output_path, index=False)
    return output_path


def export_analysis_snapshot(
    conn: duckdb.DuckDBPyConnection,
    output_path: str | Path,
    t0_block: int | None = None,
    t1_block: int | None = None,
    limit: int = 1000,
) -> Path:
    """Write the top ``limit`` analyses by simple return (NULLs last)."""
    output_path = Path(output_path)
    df = get_analyses(conn, t0_block=t0_block, t1_block=t1_block, limit=limit)
    if df.empty:
        df = pd.DataFrame(columns=SNAPSHOT_COLUMNS)
    else:
        df = df[SNAPSHOT_COLUMNS].copy()
        df["analyzed_at"] = pd.to_datetime(df["analyzed_at"], unit="s", utc=True)

    _write(df, output_path)
    logger.info("Snapshot written to %s (%d rows)", output_path, len(df))
    return output_path


def scores_to_dataframe(scores: list[CandidateScore]) -> pd.DataFrame:
    """One row per ranked wallet: rank, score, normalized components and raw metrics."""
    rows = []
    for rank, score in enumerate(scores, start=1):
        row = {"rank": rank, "wallet": score.wallet, "score": score.score}
        row.update({f"norm_{k}": v for k, v in score.normalized.model_dump().items()})
        row.update(score.raw)
        rows.append(row)
    return pd.DataFrame(rows)


def export_ranked_candidates(scores: list[CandidateScore], output_path: str | Path) -> Path:
    output_path = Path(output_path)
    _write(scores_to_dataframe(scores), output_path)
    logger.info("Ranked candidates written to %s (%d rows)", output_path, len(scores))
    return output_path
