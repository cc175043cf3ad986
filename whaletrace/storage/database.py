"""DuckDB storage for candidates, wallet analyses, activity events and labels."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import duckdb
import pandas as pd

from whaletrace.config import get_settings
from whaletrace.errors import PersistenceConflict
from whaletrace.models.schema import ActivityEvent, CandidateWallet, WalletAnalysis

EVENT_COLUMNS = [
    "chain_id", "tx_hash", "log_index", "block_number", "timestamp", "kind", "dex",
    "trader", "counterparty", "router", "asset_in", "amount_in_raw", "asset_out",
    "amount_out_raw", "usd_in", "usd_out", "usd_notional", "via_aggregator",
]


def get_connection(path: Path | None = None) -> duckdb.DuckDBPyConnection:
    """Get a DuckDB connection, creating tables if needed."""
    if path is None:
        path = get_settings().duckdb_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = duckdb.connect(str(path))
    _create_tables(conn)
    return conn


def _create_tables(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("CREATE SEQUENCE IF NOT EXISTS candidate_wallets_id_seq START 1")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS candidate_wallets (
            id BIGINT PRIMARY KEY DEFAULT nextval('candidate_wallets_id_seq'),
            address VARCHAR NOT NULL UNIQUE,
            detected_at_block BIGINT NOT NULL,
            detected_at BIGINT,
            first_transfer_amount DOUBLE DEFAULT 0.0,
            first_transfer_token VARCHAR,
            first_transfer_decimals INTEGER,
            analyzed BOOLEAN DEFAULT FALSE
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS wallet_analyses (
            wallet_id BIGINT NOT NULL,
            wallet_address VARCHAR NOT NULL,
            t0_block BIGINT NOT NULL,
            t1_block BIGINT NOT NULL,
            t0_timestamp BIGINT NOT NULL,
            t1_timestamp BIGINT NOT NULL,
            value_t0_usd DOUBLE NOT NULL,
            value_t1_usd DOUBLE NOT NULL,
            simple_return DOUBLE,
            net_cash_flow_usd DOUBLE NOT NULL,
            adjusted_return DOUBLE,
            funding_heavy BOOLEAN NOT NULL,
            stable_heavy BOOLEAN NOT NULL,
            price_missing BOOLEAN NOT NULL,
            token_count INTEGER NOT NULL,
            notes VARCHAR,
            analyzed_at BIGINT NOT NULL,
            PRIMARY KEY (wallet_id, t0_block, t1_block)
        )
    """)
    # Raw amounts are uint256 and exceed HUGEINT, so they are stored as decimal strings
    conn.execute("""
        CREATE TABLE IF NOT EXISTS activity_events (
            chain_id INTEGER NOT NULL,
            tx_hash VARCHAR NOT NULL,
            log_index INTEGER NOT NULL,
            block_number BIGINT NOT NULL,
            timestamp BIGINT NOT NULL,
            kind VARCHAR NOT NULL,
            dex VARCHAR,
            trader VARCHAR NOT NULL,
            counterparty VARCHAR NOT NULL,
            router VARCHAR,
            asset_in VARCHAR NOT NULL,
            amount_in_raw VARCHAR NOT NULL,
            asset_out VARCHAR NOT NULL,
            amount_out_raw VARCHAR NOT NULL,
            usd_in DOUBLE,
            usd_out DOUBLE,
            usd_notional DOUBLE,
            via_aggregator BOOLEAN DEFAULT FALSE,
            PRIMARY KEY (chain_id, tx_hash, log_index)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS labels (
            chain_id INTEGER NOT NULL DEFAULT 1,
            address VARCHAR NOT NULL,
            label VARCHAR NOT NULL,
            category VARCHAR NOT NULL,
            PRIMARY KEY (chain_id, address)
        )
    """)


def _to_unix(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_unix(value: int | None) -> datetime | None:
    if value is None or pd.isna(value):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _optional_float(value) -> float | None:
    if value is None or pd.isna(value):
        return None
    return float(value)


# --- Candidate wallets ---


def upsert_candidate(conn: duckdb.DuckDBPyConnection, wallet: CandidateWallet) -> bool:
    """Insert a candidate. Returns False when the address is already known."""
    address = wallet.address.lower()
    existing = conn.execute("SELECT id FROM candidate_wallets WHERE address = ?", [address]).fetchone()
    if existing:
        return False
    try:
        conn.execute("""
            INSERT INTO candidate_wallets (
                address, detected_at_block, detected_at, first_transfer_amount,
                first_transfer_token, first_transfer_decimals, analyzed
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [
            address,
            wallet.detected_at_block,
            _to_unix(wallet.detected_at or datetime.now(timezone.utc)),
            wallet.first_transfer_amount,
            wallet.first_transfer_token.lower() if wallet.first_transfer_token else None,
            wallet.first_transfer_decimals,
            wallet.analyzed,
        ])
    except duckdb.ConstraintException:
        return False
    return True


def _row_to_candidate(row: tuple) -> CandidateWallet:
    return CandidateWallet(
        id=row[0],
        address=row[1],
        detected_at_block=row[2],
        detected_at=_from_unix(row[3]),
        first_transfer_amount=row[4] or 0.0,
        first_transfer_token=row[5],
        first_transfer_decimals=row[6],
        analyzed=bool(row[7]),
    )


_CANDIDATE_COLUMNS = """
    id, address, detected_at_block, detected_at, first_transfer_amount,
    first_transfer_token, first_transfer_decimals, analyzed
"""


def get_candidate(conn: duckdb.DuckDBPyConnection, address: str) -> CandidateWallet | None:
    row = conn.execute(
        f"SELECT {_CANDIDATE_COLUMNS} FROM candidate_wallets WHERE address = ?",
        [address.lower()],
    ).fetchone()
    return _row_to_candidate(row) if row else None


def pending_wallets(
    conn: duckdb.DuckDBPyConnection,
    after_id: int = 0,
    limit: int = 100,
) -> list[CandidateWallet]:
    """Unanalyzed candidates with id > after_id, ascending by id."""
    rows = conn.execute(f"""
        SELECT {_CANDIDATE_COLUMNS}
        FROM candidate_wallets
        WHERE id > ? AND NOT analyzed
        ORDER BY id
        LIMIT ?
    """, [after_id, limit]).fetchall()
    return [_row_to_candidate(row) for row in rows]


def count_pending(conn: duckdb.DuckDBPyConnection, after_id: int = 0) -> int:
    result = conn.execute(
        "SELECT COUNT(*) FROM candidate_wallets WHERE id > ? AND NOT analyzed", [after_id]
    ).fetchone()
    return result[0] if result else 0


def mark_analyzed(conn: duckdb.DuckDBPyConnection, wallet_id: int) -> None:
    conn.execute("UPDATE candidate_wallets SET analyzed = TRUE WHERE id = ?", [wallet_id])


# --- Wallet analyses ---


def insert_analysis(conn: duckdb.DuckDBPyConnection, analysis: WalletAnalysis) -> None:
    """Insert one analysis row. Raises PersistenceConflict on (wallet_id, t0_block, t1_block)."""
    try:
        conn.execute("""
            INSERT INTO wallet_analyses VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            analysis.wallet_id,
            analysis.wallet_address.lower(),
            analysis.t0_block,
            analysis.t1_block,
            _to_unix(analysis.t0_timestamp),
            _to_unix(analysis.t1_timestamp),
            analysis.value_t0_usd,
            analysis.value_t1_usd,
            analysis.simple_return,
            analysis.net_cash_flow_usd,
            analysis.adjusted_return,
            analysis.funding_heavy,
            analysis.stable_heavy,
            analysis.price_missing,
            analysis.token_count,
            analysis.notes,
            _to_unix(analysis.analyzed_at),
        ])
    except duckdb.ConstraintException as exc:
        raise PersistenceConflict(
            f"Analysis already stored for wallet {analysis.wallet_id} "
            f"(blocks #{analysis.t0_block}..#{analysis.t1_block})"
        ) from exc


def save_analysis(conn: duckdb.DuckDBPyConnection, analysis: WalletAnalysis) -> None:
    """Insert the analysis and mark the wallet analyzed in one transaction."""
    conn.begin()
    try:
        insert_analysis(conn, analysis)
        mark_analyzed(conn, analysis.wallet_id)
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def get_analyses(
    conn: duckdb.DuckDBPyConnection,
    t0_block: int | None = None,
    t1_block: int | None = None,
    limit: int | None = None,
) -> pd.DataFrame:
    """Analyses ordered by simple_return descending (NULLs last)."""
    query = "SELECT * FROM wallet_analyses"
    params: list = []
    if t0_block is not None and t1_block is not None:
        query += " WHERE t0_block = ? AND t1_block = ?"
        params = [t0_block, t1_block]
    query += " ORDER BY simple_return DESC NULLS LAST, wallet_id"
    if limit:
        query += f" LIMIT {int(limit)}"
    return conn.execute(query, params).fetchdf()


# --- Activity events ---


def _events_to_dataframe(events: list[ActivityEvent]) -> pd.DataFrame:
    rows = [{
        "chain_id": e.chain_id,
        "tx_hash": e.tx_hash.lower(),
        "log_index": e.log_index,
        "block_number": e.block_number,
        "timestamp": _to_unix(e.timestamp),
        "kind": e.kind,
        "dex": e.dex,
        "trader": e.trader.lower(),
        "counterparty": e.counterparty.lower(),
        "router": e.router.lower() if e.router else None,
        "asset_in": e.asset_in.lower(),
        "amount_in_raw": str(e.amount_in_raw),
        "asset_out": e.asset_out.lower(),
        "amount_out_raw": str(e.amount_out_raw),
        "usd_in": e.usd_in,
        "usd_out": e.usd_out,
        "usd_notional": e.usd_notional,
        "via_aggregator": e.via_aggregator,
    } for e in events]
    df = pd.DataFrame(rows, columns=EVENT_COLUMNS)
    for col in ("usd_in", "usd_out", "usd_notional"):
        df[col] = df[col].astype("Float64")
    for col in ("dex", "router"):
        df[col] = df[col].astype("string")
    return df


def insert_events(conn: duckdb.DuckDBPyConnection, events: list[ActivityEvent]) -> int:
    """Bulk insert events, ignoring (chain_id, tx_hash, log_index) duplicates. Returns rows inserted."""
    if not events:
        return 0
    df = _events_to_dataframe(events)
    before = conn.execute("SELECT COUNT(*) FROM activity_events").fetchone()[0]
    conn.execute("INSERT OR IGNORE INTO activity_events SELECT * FROM df")
    after = conn.execute("SELECT COUNT(*) FROM activity_events").fetchone()[0]
    return after - before


def update_event_prices(conn: duckdb.DuckDBPyConnection, events: list[ActivityEvent]) -> int:
    if not events:
        return 0
    conn.executemany("""
        UPDATE activity_events
        SET usd_in = ?, usd_out = ?, usd_notional = ?
        WHERE chain_id = ? AND tx_hash = ? AND log_index = ?
    """, [
        [e.usd_in, e.usd_out, e.usd_notional, e.chain_id, e.tx_hash.lower(), e.log_index]
        for e in events
    ])
    return len(events)


def delete_events(conn: duckdb.DuckDBPyConnection, keys: list[tuple[int, str, int]]) -> int:
    if not keys:
        return 0
    before = conn.execute("SELECT COUNT(*) FROM activity_events").fetchone()[0]
    conn.executemany(
        "DELETE FROM activity_events WHERE chain_id = ? AND tx_hash = ? AND log_index = ?",
        [[chain_id, tx_hash.lower(), log_index] for chain_id, tx_hash, log_index in keys],
    )
    after = conn.execute("SELECT COUNT(*) FROM activity_events").fetchone()[0]
    return before - after


def _row_to_event(row: dict) -> ActivityEvent:
    return ActivityEvent(
        chain_id=int(row["chain_id"]),
        tx_hash=row["tx_hash"],
        log_index=int(row["log_index"]),
        block_number=int(row["block_number"]),
        timestamp=_from_unix(row["timestamp"]),
        kind=row["kind"],
        dex=row["dex"] if isinstance(row["dex"], str) else None,
        trader=row["trader"],
        counterparty=row["counterparty"],
        router=row["router"] if isinstance(row["router"], str) else None,
        asset_in=row["asset_in"],
        amount_in_raw=int(row["amount_in_raw"]),
        asset_out=row["asset_out"],
        amount_out_raw=int(row["amount_out_raw"]),
        usd_in=_optional_float(row["usd_in"]),
        usd_out=_optional_float(row["usd_out"]),
        usd_notional=_optional_float(row["usd_notional"]),
        via_aggregator=bool(row["via_aggregator"]),
    )


def _fetch_events(conn: duckdb.DuckDBPyConnection, query: str, params: list) -> list[ActivityEvent]:
    df = conn.execute(query, params).fetchdf()
    return [_row_to_event(row) for row in df.to_dict("records")]


def get_unpriced_events(
    conn: duckdb.DuckDBPyConnection,
    chain_id: int = 1,
    from_block: int | None = None,
    to_block: int | None = None,
) -> list[ActivityEvent]:
    query = "SELECT * FROM activity_events WHERE chain_id = ? AND kind = 'swap' AND usd_notional IS NULL"
    params: list = [chain_id]
    if from_block is not None:
        query += " AND block_number >= ?"
        params.append(from_block)
    if to_block is not None:
        query += " AND block_number <= ?"
        params.append(to_block)
    query += " ORDER BY block_number, log_index"
    return _fetch_events(conn, query, params)


def get_events_for_trader(
    conn: duckdb.DuckDBPyConnection,
    trader: str,
    priced_only: bool = True,
    kind: str = "swap",
) -> list[ActivityEvent]:
    """A trader's events in replay order: (timestamp, block, log_index)."""
    query = "SELECT * FROM activity_events WHERE trader = ? AND kind = ?"
    if priced_only:
        query += " AND usd_notional IS NOT NULL"
    query += " ORDER BY timestamp, block_number, log_index"
    return _fetch_events(conn, query, [trader.lower(), kind])


def get_priced_swaps(
    conn: duckdb.DuckDBPyConnection,
    start: datetime,
    end: datetime,
    chain_ids: list[int] | None = None,
) -> pd.DataFrame:
    """Priced swaps with start <= timestamp < end."""
    query = """
        SELECT trader, chain_id, usd_in, usd_out, usd_notional
        FROM activity_events
        WHERE kind = 'swap' AND usd_notional IS NOT NULL
          AND timestamp >= ? AND timestamp < ?
    """
    params: list = [_to_unix(start), _to_unix(end)]
    if chain_ids:
        query += " AND chain_id IN (SELECT UNNEST(?::INTEGER[]))"
        params.append(list(chain_ids))
    return conn.execute(query, params).fetchdf()


# --- Labels ---


def insert_labels(conn: duckdb.DuckDBPyConnection, df: pd.DataFrame) -> int:
    """Upsert (chain_id, address, label, category) rows."""
    if df.empty:
        return 0
    df = df[["chain_id", "address", "label", "category"]].copy()
    df["address"] = df["address"].str.lower()
    conn.execute("INSERT OR REPLACE INTO labels SELECT * FROM df")
    return len(df)


def get_labels(conn: duckdb.DuckDBPyConnection, chain_id: int = 1) -> dict[str, tuple[str, str]]:
    rows = conn.execute(
        "SELECT address, label, category FROM labels WHERE chain_id = ?", [chain_id]
    ).fetchall()
    return {address: (label, category) for address, label, category in rows}
