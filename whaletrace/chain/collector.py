"""Walk a block range in adaptive chunks and decode swaps/transfers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tqdm import tqdm

from whaletrace.chain.gateway import ProviderGateway
from whaletrace.chain.registry import get_chain_config
from whaletrace.errors import RangeTooLargeError
from whaletrace.models.schema import ActivityEvent
from whaletrace.tokens.constants import SWAP_TOPICS, TRANSFER_TOPIC
from whaletrace.tokens.dex import decode_swap_log
from whaletrace.tokens.transfers import parse_transfer_logs, sort_events, to_hex, to_int

logger = logging.getLogger(__name__)


@dataclass
class CollectResult:
    events: list[ActivityEvent] = field(default_factory=list)
    total_logs: int = 0
    cancelled: bool = False


class ChunkedCollector:
    """Collect logs over [from_block, to_block] under provider range limits.

    The span starts at the chain's maximum, halves on a range error and
    doubles back (capped) after each successful chunk. Chunking never changes
    the collected set or its (block, log_index) order.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        span: int | None = None,
        stop: asyncio.Event | None = None,
        progress: bool = True,
    ):
        self.gateway = gateway
        self.chain_id = gateway.chain_id
        self.default_span = max(1, span or get_chain_config(self.chain_id).log_span)
        self.stop = stop
        self.progress = progress
        self._block_timestamps: dict[int, datetime] = {}
        self._pool_tokens: dict[str, tuple[str, str]] = {}
        self._transactions: dict[str, dict] = {}

    def _stopped(self) -> bool:
        return self.stop is not None and self.stop.is_set()

    async def fetch_logs(
        self,
        topic: str,
        from_block: int,
        to_block: int,
        address: str | list[str] | None = None,
    ) -> tuple[list[dict], bool]:
        """Return (logs, cancelled)."""
        logs: list[dict] = []
        span = self.default_span
        cursor = from_block

        with tqdm(
            total=max(0, to_block - from_block + 1),
            desc=f"Logs {from_block}-{to_block}",
            disable=not self.progress,
        ) as pbar:
            while cursor <= to_block:
                if self._stopped():
                    logger.info("Collection stopped at block #%d", cursor)
                    return logs, True

                chunk_end = min(cursor + span - 1, to_block)
                try:
                    chunk = await self.gateway.logs_in_range(topic, cursor, chunk_end, address=address)
                except RangeTooLargeError:
                    if span == 1:
                        raise
                    span = max(1, span // 2)
                    logger.debug("Range too large at #%d, span -> %d", cursor, span)
                    continue

                logs.extend(chunk)
                pbar.update(chunk_end - cursor + 1)
                cursor = chunk_end + 1
                if span < self.default_span:
                    span = min(span * 2, self.default_span)

        return logs, False

    async def _block_timestamp(self, block_number: int) -> datetime:
        if block_number not in self._block_timestamps:
            block = await self.gateway.get_block(block_number)
            self._block_timestamps[block_number] = datetime.fromtimestamp(block.timestamp, tz=timezone.utc)
        return self._block_timestamps[block_number]

    async def _pool(self, pool: str) -> tuple[str, str]:
        key = pool.lower()
        if key not in self._pool_tokens:
            self._pool_tokens[key] = await self.gateway.pool_tokens(pool)
        return self._pool_tokens[key]

    async def _transaction(self, tx_hash: str) -> dict:
        key = tx_hash.lower()
        if key not in self._transactions:
            tx = await self.gateway.get_transaction(tx_hash)
            self._transactions[key] = {
                "from": str(tx.get("from") or "").lower(),
                "to": str(tx["to"]).lower() if tx.get("to") else None,
            }
        return self._transactions[key]

    async def collect_swaps(self, from_block: int, to_block: int) -> CollectResult:
        """Uniswap V2 and V3 swaps, decoded from the trader's side."""
        result = CollectResult()
        events: list[ActivityEvent] = []

        for dex, topic in SWAP_TOPICS.items():
            logs, cancelled = await self.fetch_logs(topic, from_block, to_block)
            result.total_logs += len(logs)

            for log in logs:
                if not log.get("blockNumber") or not log.get("transactionHash"):
                    continue
                block_number = to_int(log["blockNumber"])
                timestamp = await self._block_timestamp(block_number)
                tx = await self._transaction(to_hex(log["transactionHash"]))
                tokens = await self._pool(str(log["address"]))
                event = decode_swap_log(log, dex, tokens, tx, timestamp, self.chain_id)
                if event is not None:
                    events.append(event)

            if cancelled:
                result.cancelled = True
                break

        result.events = sort_events(events)
        logger.info(
            "Collected %d swaps from %d logs (blocks #%d..#%d%s)",
            len(result.events), result.total_logs, from_block, to_block,
            ", cancelled" if result.cancelled else "",
        )
        return result

    async def collect_transfers(self, from_block: int, to_block: int, token: str | None = None) -> CollectResult:
        """ERC-20 Transfer events, optionally for a single token contract."""
        logs, cancelled = await self.fetch_logs(TRANSFER_TOPIC, from_block, to_block, address=token)
        block_numbers = sorted({to_int(log["blockNumber"]) for log in logs if log.get("blockNumber")})
        timestamps = {n: await self._block_timestamp(n) for n in block_numbers}
        events = parse_transfer_logs(logs, self.chain_id, timestamps)
        return CollectResult(events=events, total_logs=len(logs), cancelled=cancelled)
