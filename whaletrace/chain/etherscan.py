"""Etherscan V2 block-by-timestamp lookup."""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

import httpx

from whaletrace.config import Settings, get_settings
from whaletrace.errors import (
    ConfigurationError,
    RateLimited,
    TransientFetchError,
    is_rate_limit_message,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

PROVIDER = "Etherscan"
RATE_LIMIT_SECONDS = 5.0

Closest = Literal["before", "after"]


class EtherscanClient:
    def __init__(
        self,
        api_key: str | None = None,
        chain_id: int = 1,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.api_key = api_key or settings.etherscan_api_key
        if not self.api_key:
            raise ConfigurationError("Etherscan API key not configured (ETHERSCAN_API_KEY)")
        self.chain_id = chain_id
        self.base_url = base_url or settings.etherscan_base_url
        self.timeout = timeout or settings.request_timeout_seconds
        self._transport = transport

    async def block_by_timestamp(self, timestamp: int, closest: Closest = "before") -> int:
        """Closest block at or before/after a unix timestamp."""
        params = {
            "chainid": self.chain_id,
            "module": "block",
            "action": "getblocknobytime",
            "timestamp": int(timestamp),
            "closest": closest,
            "apikey": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await asyncio.wait_for(client.get(self.base_url, params=params), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientFetchError("getblocknobytime timed out", provider=PROVIDER) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"getblocknobytime: {exc}", provider=PROVIDER) from exc

        if resp.status_code == 429:
            logger.warning("Etherscan rate limit hit.")
            raise RateLimited(PROVIDER, parse_retry_after(resp.headers.get("Retry-After"), RATE_LIMIT_SECONDS))
        if resp.status_code >= 400:
            raise TransientFetchError(f"getblocknobytime: HTTP {resp.status_code}", provider=PROVIDER)

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientFetchError("getblocknobytime: invalid JSON response", provider=PROVIDER) from exc

        if data.get("status") != "1":
            message = f"{data.get('message', '')}: {data.get('result', '')}"
            if is_rate_limit_message(message):
                raise RateLimited(PROVIDER, RATE_LIMIT_SECONDS)
            raise TransientFetchError(f"Etherscan API error: {message}", provider=PROVIDER)

        try:
            block_number = int(data["result"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TransientFetchError(f"Etherscan returned no block: {data.get('result')!r}", provider=PROVIDER) from exc

        logger.info("Etherscan: %d (%s) -> block #%d", timestamp, closest, block_number)
        return block_number
