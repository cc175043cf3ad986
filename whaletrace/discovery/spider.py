"""Block-by-block spider that records counterparties of large ETH and ERC-20 transfers as candidates."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import duckdb
from tqdm import tqdm

from whaletrace.chain.gateway import ProviderGateway
from whaletrace.errors import RateLimited, TransientFetchError
from whaletrace.models.schema import AssetTransfer, CandidateWallet
from whaletrace.storage.database import upsert_candidate
from whaletrace.tokens.constants import IGNORED_ADDRESSES

logger = logging.getLogger(__name__)

RECENT_BLOCKS = 10


@dataclass
class SpiderResult:
    from_block: int
    to_block: int
    last_block: int
    blocks_scanned: int = 0
    transfers_seen: int = 0
    candidates_added: int = 0
    cancelled: bool = False


class CandidateSpider:
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        gateway: ProviderGateway,
        min_transfer_usd: float,
        state_path: str | Path | None = None,
        progress: bool = True,
    ):
        self.conn = conn
        self.gateway = gateway
        self.min_transfer_usd = min_transfer_usd
        self.state_path = Path(state_path) if state_path else None
        self.progress = progress

    # --- State ---

    def load_state(self) -> int | None:
        """Last fully processed block, or None when there is no usable state file."""
        if self.state_path is None or not self.state_path.exists():
            return None
        try:
            state = json.loads(self.state_path.read_text(encoding="utf-8"))
            return int(state["last_processed_block"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable spider state %s: %s", self.state_path, exc)
            return None

    def save_state(self, last_block: int) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_name(self.state_path.name + ".tmp")
        tmp.write_text(json.dumps({
            "last_processed_block": last_block,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }, indent=2), encoding="utf-8")
        os.replace(tmp, self.state_path)

    # --- Scanning ---

    async def scan(
        self,
        from_block: int | None = None,
        to_block: int | None = None,
        stop: asyncio.Event | None = None,
    ) -> SpiderResult:
        """Scan [from_block, to_block]. Defaults resume after the saved state, else the last few blocks."""
        latest = None
        if to_block is None or from_block is None:
            latest = (await self.gateway.latest_block()).number
        if from_block is None:
            saved = self.load_state()
            from_block = saved + 1 if saved is not None else max(0, latest - RECENT_BLOCKS)
        if to_block is None:
            to_block = latest

        result = SpiderResult(from_block=from_block, to_block=to_block, last_block=from_block - 1)
        if from_block > to_block:
            logger.info("No new blocks (from #%d > to #%d)", from_block, to_block)
            return result

        logger.info("Scanning blocks #%d -> #%d (%d blocks)", from_block, to_block, to_block - from_block + 1)
        try:
            for block_number in tqdm(range(from_block, to_block + 1), desc="Spider", disable=not self.progress):
                if stop is not None and stop.is_set():
                    result.cancelled = True
                    break
                seen, added = await self.scan_block(block_number)
                result.transfers_seen += seen
                result.candidates_added += added
                result.blocks_scanned += 1
                result.last_block = block_number
        finally:
            if result.last_block >= from_block:
                self.save_state(result.last_block)

        logger.info(
            "Spider done: %d blocks, %d transfers, %d new candidates%s",
            result.blocks_scanned, result.transfers_seen, result.candidates_added,
            " (cancelled)" if result.cancelled else "",
        )
        return result

    async def scan_block(self, block_number: int) -> tuple[int, int]:
        """Returns (transfers seen, candidates added). Rate limits propagate."""
        try:
            transfers = await self.gateway.block_transfers(block_number)
        except TransientFetchError as exc:
            logger.warning("Failed to fetch transfers for block #%d: %s", block_number, exc)
            return 0, 0

        block_time: datetime | None = None
        added = 0
        for transfer in transfers:
            if transfer.timestamp is None and block_time is None:
                block = await self.gateway.get_block(block_number)
                block_time = datetime.fromtimestamp(block.timestamp, tz=timezone.utc)
            timestamp = transfer.timestamp or block_time
            usd = await self._usd_value(transfer, timestamp)
            if usd < self.min_transfer_usd:
                continue

            logger.info(
                "Large transfer: %.4f %s ($%.0f) | %s -> %s",
                transfer.amount, transfer.symbol or transfer.token_address or "ETH", usd,
                transfer.from_address, transfer.to_address,
            )
            for address in (transfer.from_address, transfer.to_address):
                if self._save_candidate(address, transfer, block_number, timestamp):
                    added += 1
        return len(transfers), added

    async def _usd_value(self, transfer: AssetTransfer, timestamp: datetime) -> float:
        if transfer.amount <= 0:
            return 0.0
        try:
            price = await self.gateway.price_at(transfer.token_address, timestamp, symbol=transfer.symbol)
        except RateLimited:
            raise
        except TransientFetchError as exc:
            logger.warning("Price lookup failed for %s: %s", transfer.token_address, exc)
            return 0.0
        return transfer.amount * price if price > 0 else 0.0

    def _save_candidate(self, address: str, transfer: AssetTransfer, block_number: int, timestamp: datetime) -> bool:
        if not address or address.lower() in IGNORED_ADDRESSES:
            return False
        return upsert_candidate(self.conn, CandidateWallet(
            address=address,
            detected_at_block=block_number,
            detected_at=timestamp,
            first_transfer_amount=transfer.amount,
            first_transfer_token=transfer.token_address,
            first_transfer_decimals=transfer.decimals,
        ))
