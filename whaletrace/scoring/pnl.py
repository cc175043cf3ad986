"""Realized P&L per wallet using FIFO or LIFO cost basis over priced swaps."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

import duckdb
from tqdm import tqdm

from whaletrace.models.schema import ActivityEvent, Candidate, PnlResult

logger = logging.getLogger(__name__)

PnlMode = Literal["fifo", "lifo"]


@dataclass
class Lot:
    remaining_units: int
    cost_basis_usd: float
    timestamp: datetime


class LotBook:
    """Open lots per asset key. FIFO consumes the oldest lot first, LIFO the newest."""

    def __init__(self, mode: PnlMode = "fifo"):
        if mode not in ("fifo", "lifo"):
            raise ValueError(f"Unknown cost-basis mode '{mode}'")
        self.mode = mode
        self._lots: dict[str, deque[Lot]] = defaultdict(deque)

    def acquire(self, asset: str, units: int, cost_usd: float, timestamp: datetime) -> None:
        if units <= 0:
            return
        self._lots[asset.lower()].append(Lot(units, cost_usd, timestamp))

    def dispose(self, asset: str, units: int, proceeds_usd: float, timestamp: datetime) -> tuple[float, bool]:
        """Consume lots for a disposal. Returns (realized gain, matched any lot).

        Cost is prorated by portion/lot.remaining, proceeds by portion/units.
        Units beyond the open lots are pure proceeds with no realized gain.
        """
        lots = self._lots.get(asset.lower())
        if units <= 0 or not lots:
            return 0.0, False

        realized = 0.0
        remaining = units
        while remaining > 0 and lots:
            lot = lots[0] if self.mode == "fifo" else lots[-1]
            portion = min(lot.remaining_units, remaining)
            cost = lot.cost_basis_usd * (portion / lot.remaining_units)
            revenue = proceeds_usd * (portion / units)
            realized += revenue - cost

            lot.remaining_units -= portion
            lot.cost_basis_usd -= cost
            lot.timestamp = timestamp
            remaining -= portion

            if lot.remaining_units <= 0:
                if self.mode == "fifo":
                    lots.popleft()
                else:
                    lots.pop()

        return realized, True

    def open_lots(self, asset: str) -> list[Lot]:
        return list(self._lots.get(asset.lower(), ()))


def evaluate_wallet(events: list[ActivityEvent], mode: PnlMode = "fifo") -> PnlResult:
    """Replay a wallet's priced swaps through a LotBook.

    The sent leg (asset_in) is a disposal worth usd_in, the received leg
    (asset_out) an acquisition costing usd_out; the disposal is booked first.
    A leg without its own USD value uses the other leg's value.
    """
    book = LotBook(mode)
    realized = 0.0
    gross = 0.0
    trades = 0
    realized_tokens = 0

    ordered = sorted(
        (e for e in events if e.kind == "swap"),
        key=lambda e: (e.timestamp, e.block_number, e.log_index),
    )
    for event in ordered:
        proceeds = event.usd_in if event.usd_in is not None else event.usd_out
        cost = event.usd_out if event.usd_out is not None else event.usd_in
        if proceeds is None or cost is None:
            continue

        if event.amount_in_raw > 0:
            gain, matched = book.dispose(
                f"{event.chain_id}:{event.asset_in}", event.amount_in_raw, proceeds, event.timestamp
            )
            realized += gain
            gross += proceeds
            trades += 1
            if matched:
                realized_tokens += 1

        if event.amount_out_raw > 0:
            book.acquire(f"{event.chain_id}:{event.asset_out}", event.amount_out_raw, cost, event.timestamp)
            gross += cost
            trades += 1

    return PnlResult(realized=realized, gross=gross, trades=trades, realized_tokens=realized_tokens)


def evaluate_candidates(
    conn: duckdb.DuckDBPyConnection,
    candidates: list[Candidate],
    mode: PnlMode = "fifo",
    progress: bool = True,
) -> dict[str, PnlResult]:
    """P&L for each mined candidate from its stored priced swaps."""
    from whaletrace.storage.database import get_events_for_trader

    results: dict[str, PnlResult] = {}
    for candidate in tqdm(candidates, desc="Computing wallet P&L", disable=not progress):
        wallet = candidate.wallet.lower()
        results[wallet] = evaluate_wallet(get_events_for_trader(conn, wallet), mode)
    logger.info("Computed %s P&L for %d candidates", mode.upper(), len(results))
    return results
