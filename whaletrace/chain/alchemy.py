"""Alchemy enhanced API: token inventory, token metadata and asset transfers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from whaletrace.config import Settings, get_settings
from whaletrace.errors import (
    RateLimited,
    TransientFetchError,
    is_rate_limit_message,
    parse_retry_after,
)
from whaletrace.models.schema import AssetTransfer, TokenMetadata
from whaletrace.tokens.transfers import dedupe_transfers, hex_to_int, parse_asset_transfer

logger = logging.getLogger(__name__)

PROVIDER = "Alchemy"
RATE_LIMIT_SECONDS = 60.0
MAX_COUNT = "0x3e8"
RATE_LIMIT_CODES = {429, -32005}


class AlchemyClient:
    """JSON-RPC client for the ``alchemy_*`` methods."""

    def __init__(
        self,
        url: str | None = None,
        chain_id: int = 1,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.url = url or settings.get_alchemy_url(chain_id)
        self.timeout = timeout or settings.request_timeout_seconds
        self._transport = transport

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await asyncio.wait_for(client.post(self.url, json=payload), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientFetchError(f"{method} timed out", provider=PROVIDER) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"{method}: {exc}", provider=PROVIDER) from exc

        if resp.status_code == 429:
            raise RateLimited(PROVIDER, parse_retry_after(resp.headers.get("Retry-After"), RATE_LIMIT_SECONDS))
        if resp.status_code >= 400:
            raise TransientFetchError(f"{method}: HTTP {resp.status_code}", provider=PROVIDER)

        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientFetchError(f"{method}: invalid JSON response", provider=PROVIDER) from exc

        error = body.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if code in RATE_LIMIT_CODES or is_rate_limit_message(message):
                raise RateLimited(PROVIDER, RATE_LIMIT_SECONDS)
            raise TransientFetchError(f"{method}: {message}", provider=PROVIDER)
        return body.get("result")

    async def token_holdings(self, address: str) -> list[str]:
        """Contract addresses of every ERC-20 with a non-zero balance, across all pages."""
        holdings: list[str] = []
        page_key: str | None = None
        while True:
            params: list[Any] = [address, "erc20"]
            if page_key:
                params.append({"pageKey": page_key})
            result = await self._rpc("alchemy_getTokenBalances", params) or {}

            for entry in result.get("tokenBalances", []):
                contract = entry.get("contractAddress")
                balance = entry.get("tokenBalance")
                if not contract or entry.get("error"):
                    continue
                try:
                    if hex_to_int(balance or "0x") == 0:
                        continue
                except ValueError:
                    continue
                holdings.append(contract.lower())

            page_key = result.get("pageKey")
            if not page_key:
                break

        logger.info("Alchemy token inventory: %s -> %d tokens", address, len(holdings))
        return holdings

    async def token_metadata(self, token_address: str) -> TokenMetadata | None:
        result = await self._rpc("alchemy_getTokenMetadata", [token_address])
        if not result:
            return None
        decimals = result.get("decimals")
        try:
            decimals = int(decimals) if decimals is not None else None
        except (TypeError, ValueError):
            decimals = None
        return TokenMetadata(
            address=token_address.lower(),
            symbol=result.get("symbol") or "",
            name=result.get("name") or "",
            decimals=decimals,
        )

    async def _paged_transfers(self, params: dict[str, Any]) -> list[AssetTransfer]:
        transfers: list[AssetTransfer] = []
        page_key: str | None = None
        while True:
            query = dict(params)
            if page_key:
                query["pageKey"] = page_key
            result = await self._rpc("alchemy_getAssetTransfers", [query]) or {}
            for raw in result.get("transfers", []):
                transfer = parse_asset_transfer(raw)
                if transfer is not None:
                    transfers.append(transfer)
            page_key = result.get("pageKey")
            if not page_key:
                return transfers

    async def asset_transfers(self, address: str, from_block: int, to_block: int) -> list[AssetTransfer]:
        """Native and ERC-20 transfers sent or received by ``address`` in [from_block, to_block]."""
        base = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "withMetadata": True,
            "excludeZeroValue": True,
            "category": ["external", "erc20"],
            "maxCount": MAX_COUNT,
        }
        outbound = await self._paged_transfers({**base, "fromAddress": address})
        inbound = await self._paged_transfers({**base, "toAddress": address})
        return dedupe_transfers(outbound + inbound)

    async def block_transfers(self, block_number: int) -> list[AssetTransfer]:
        """Every native ETH and ERC-20 transfer in a single block."""
        params = {
            "fromBlock": hex(block_number),
            "toBlock": hex(block_number),
            "withMetadata": True,
            "excludeZeroValue": True,
            "category": ["external", "erc20"],
            "maxCount": MAX_COUNT,
        }
        return dedupe_transfers(await self._paged_transfers(params))
