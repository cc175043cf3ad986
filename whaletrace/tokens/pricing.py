"""Historical USD prices: CoinGecko market_chart/range with DeFiLlama fallback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import MutableMapping
from datetime import datetime, timedelta, timezone

import httpx
from cachetools import TTLCache

from whaletrace.config import Settings, get_settings
from whaletrace.errors import RateLimited, TransientFetchError, parse_retry_after
from whaletrace.tokens.constants import (
    COINGECKO_NATIVE_ID,
    COINGECKO_PLATFORM,
    DEFILLAMA_CHAIN_PREFIX,
    WETH_ADDRESSES,
    is_stablecoin,
)

logger = logging.getLogger(__name__)

COINGECKO_RATE_LIMIT_SECONDS = 300.0
DEFILLAMA_RATE_LIMIT_SECONDS = 60.0
COINGECKO_WINDOW = timedelta(minutes=5)

NATIVE = "native"


def price_cache(maxsize: int = 10_000, ttl: float = 3600) -> TTLCache:
    return TTLCache(maxsize=maxsize, ttl=ttl)


def closest_price(points: list, target_ms: int) -> float:
    """Price of the [ms, price] point nearest to ``target_ms``; 0.0 for no points."""
    best_price = 0.0
    best_diff: int | None = None
    for point in points:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        diff = abs(int(point[0]) - target_ms)
        if best_diff is None or diff < best_diff:
            best_diff = diff
            best_price = float(point[1])
    return best_price


class PriceOracle:
    """Resolve the USD price of native ETH or an ERC-20 at a timestamp.

    Stablecoins short-circuit to 1.0. CoinGecko is tried first; a failure, a rate
    limit or a zero answer falls through to DeFiLlama. A DeFiLlama rate limit
    propagates, any other fallback failure yields 0.0.
    """

    def __init__(
        self,
        chain_id: int = 1,
        coingecko_base_url: str | None = None,
        coingecko_api_key: str | None = None,
        defillama_base_url: str | None = None,
        timeout: float | None = None,
        cache: MutableMapping | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.chain_id = chain_id
        self.coingecko_base_url = (coingecko_base_url or settings.coingecko_base_url).rstrip("/")
        self.coingecko_api_key = coingecko_api_key if coingecko_api_key is not None else settings.coingecko_api_key
        self.defillama_base_url = (defillama_base_url or settings.defillama_base_url).rstrip("/")
        self.timeout = timeout or settings.request_timeout_seconds
        self._cache = cache if cache is not None else price_cache()
        self._transport = transport

    async def price_at(
        self,
        asset: str | None,
        timestamp: datetime,
        is_stable: bool = False,
        symbol: str | None = None,
    ) -> float:
        """USD price of ``asset`` (None = native ETH) at ``timestamp``; 0.0 when unresolvable."""
        if asset is not None and (is_stable or is_stablecoin(self.chain_id, asset, symbol)):
            return 1.0

        timestamp = timestamp.astimezone(timezone.utc)
        key = ((asset or NATIVE).lower(), timestamp.replace(second=0, microsecond=0))
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        price = 0.0
        try:
            price = await self._coingecko(asset, timestamp)
        except RateLimited as exc:
            logger.warning("CoinGecko rate limited for %s, trying DefiLlama", asset or NATIVE)
            logger.debug("CoinGecko: %s", exc)
        except TransientFetchError as exc:
            logger.warning("CoinGecko price lookup failed for %s, trying DefiLlama: %s", asset or NATIVE, exc)

        if price > 0:
            self._cache[key] = price
            return price

        try:
            price = await self._defillama(asset, timestamp)
        except TransientFetchError as exc:
            logger.warning("DefiLlama price lookup failed for %s: %s", asset or NATIVE, exc)
            return 0.0

        if price > 0:
            self._cache[key] = price
        return price

    async def _get(self, source: str, url: str, params: dict | None = None, headers: dict | None = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await asyncio.wait_for(
                    client.get(url, params=params, headers=headers),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientFetchError(f"{source} request timed out", provider=source) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"{source}: {exc}", provider=source) from exc

    async def _coingecko(self, asset: str | None, timestamp: datetime) -> float:
        if asset is None:
            coin_id = COINGECKO_NATIVE_ID.get(self.chain_id, "ethereum")
            url = f"{self.coingecko_base_url}/coins/{coin_id}/market_chart/range"
        else:
            platform = COINGECKO_PLATFORM.get(self.chain_id)
            if not platform:
                return 0.0
            url = f"{self.coingecko_base_url}/coins/{platform}/contract/{asset.lower()}/market_chart/range"

        params = {
            "vs_currency": "usd",
            "from": int((timestamp - COINGECKO_WINDOW).timestamp()),
            "to": int((timestamp + COINGECKO_WINDOW).timestamp()),
        }
        headers = {"x-cg-demo-api-key": self.coingecko_api_key} if self.coingecko_api_key else None

        resp = await self._get("CoinGecko", url, params=params, headers=headers)
        if resp.status_code == 429:
            raise RateLimited(
                "CoinGecko",
                parse_retry_after(resp.headers.get("Retry-After"), COINGECKO_RATE_LIMIT_SECONDS),
            )
        if resp.status_code == 404:
            return 0.0
        if resp.status_code >= 400:
            raise TransientFetchError(f"CoinGecko: HTTP {resp.status_code}", provider="CoinGecko")

        try:
            points = resp.json().get("prices", [])
        except ValueError as exc:
            raise TransientFetchError("CoinGecko: invalid JSON response", provider="CoinGecko") from exc
        return closest_price(points, int(timestamp.timestamp() * 1000))

    async def _defillama(self, asset: str | None, timestamp: datetime) -> float:
        prefix = DEFILLAMA_CHAIN_PREFIX.get(self.chain_id)
        address = asset or WETH_ADDRESSES.get(self.chain_id)
        if not prefix or not address:
            return 0.0

        coin_id = f"{prefix}:{address.lower()}"
        url = f"{self.defillama_base_url}/prices/historical/{int(timestamp.timestamp())}/{coin_id}"

        resp = await self._get("DefiLlama", url)
        if resp.status_code == 429:
            raise RateLimited(
                "DefiLlama",
                parse_retry_after(resp.headers.get("Retry-After"), DEFILLAMA_RATE_LIMIT_SECONDS),
            )
        if resp.status_code >= 400:
            raise TransientFetchError(f"DefiLlama: HTTP {resp.status_code}", provider="DefiLlama")

        try:
            coins = resp.json().get("coins", {})
        except ValueError as exc:
            raise TransientFetchError("DefiLlama: invalid JSON response", provider="DefiLlama") from exc

        for key, info in coins.items():
            if key.lower() == coin_id and info and "price" in info:
                return float(info["price"])
        return 0.0
