"""Resolve an analysis window's wall-clock bounds to block heights."""

from __future__ import annotations

import logging
from datetime import datetime

from whaletrace.chain.gateway import ProviderGateway
from whaletrace.config import AnalysisWindowConfig, build_window_key
from whaletrace.errors import RateLimited, TransientFetchError
from whaletrace.models.schema import BlockRef, ResolvedWindow

logger = logging.getLogger(__name__)

MAX_PROBES = 80


class BlockResolver:
    def __init__(self, gateway: ProviderGateway):
        self.gateway = gateway

    async def resolve(self, config: AnalysisWindowConfig, now: datetime | None = None) -> ResolvedWindow:
        """Timestamps first (config errors surface before any I/O), then blocks.

        Block overrides win; otherwise the explicit lookup is used and binary
        search covers a missing or failing lookup provider.
        """
        t0, t1 = config.resolve_window(now)
        window_key = build_window_key(t0, t1)
        overrides = config.block_overrides()

        if overrides is not None:
            t0_block, t1_block = overrides
            logger.info("Using block overrides #%d -> #%d", t0_block, t1_block)
        else:
            t0_block = await self._lookup(t0, "before")
            t1_block = await self._lookup(t1, "after")

        logger.info("Analysis window %s -> blocks #%d..#%d", window_key, t0_block, t1_block)
        return ResolvedWindow(t0=t0, t1=t1, t0_block=t0_block, t1_block=t1_block, window_key=window_key)

    async def _lookup(self, timestamp: datetime, closest: str) -> int:
        unix = int(timestamp.timestamp())
        try:
            block_number = await self.gateway.block_by_timestamp(unix, closest)
        except RateLimited:
            raise
        except TransientFetchError as exc:
            logger.warning("Block lookup failed for %s (%s), falling back to binary search: %s", timestamp, closest, exc)
            block_number = None

        if block_number is not None:
            return block_number
        return (await self.block_at_or_after(unix)).number

    async def block_at_or_after(self, timestamp: int) -> BlockRef:
        """Lowest block with ``block.timestamp >= timestamp``; latest block if none is newer."""
        latest = await self.gateway.latest_block()
        if timestamp >= latest.timestamp:
            return latest

        low, high = 0, latest.number
        candidate = latest
        probes = 0
        while low <= high and probes < MAX_PROBES:
            mid = (low + high) // 2
            block = await self.gateway.get_block(mid)
            probes += 1
            if block.timestamp < timestamp:
                low = mid + 1
            else:
                candidate = block
                if mid == 0:
                    break
                high = mid - 1

        logger.debug("Binary search: ts=%d -> block #%d after %d probes", timestamp, candidate.number, probes)
        return candidate
