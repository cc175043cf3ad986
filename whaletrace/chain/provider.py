"""Async EVM chain provider using web3.py 7.x."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.middleware import ExtraDataToPOAMiddleware

from whaletrace.config import Settings, get_settings
from whaletrace.chain.registry import ChainConfig, get_chain_config
from whaletrace.errors import (
    RangeTooLargeError,
    RateLimited,
    TransientFetchError,
    is_range_error_message,
    is_rate_limit_message,
)
from whaletrace.models.schema import BlockRef, TokenMetadata
from whaletrace.tokens.constants import ERC20_ABI, POOL_ABI

logger = logging.getLogger(__name__)

T = TypeVar("T")

RPC_RATE_LIMIT_SECONDS = 60.0


def classify_rpc_error(exc: BaseException, provider: str, what: str) -> Exception:
    """Map a raw transport/RPC failure onto the whaletrace taxonomy."""
    status = getattr(exc, "status", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if status == 429 or is_rate_limit_message(exc):
        return RateLimited(provider, RPC_RATE_LIMIT_SECONDS)
    if is_range_error_message(exc):
        return RangeTooLargeError(f"{what}: {exc}", provider=provider)
    return TransientFetchError(f"{what}: {exc}", provider=provider)


class ChainProvider:
    """Async web3 provider for any EVM chain."""

    def __init__(
        self,
        chain_id: int,
        rpc_url: str | None = None,
        timeout: float | None = None,
        name: str = "rpc",
        settings: Settings | None = None,
    ):
        self.chain_config: ChainConfig = get_chain_config(chain_id)
        settings = settings or get_settings()
        rpc_url = rpc_url or settings.get_rpc_url(chain_id)
        self.timeout = timeout or settings.request_timeout_seconds
        self.name = name
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        if self.chain_config.is_poa:
            self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    @property
    def chain_id(self) -> int:
        return self.chain_config.chain_id

    async def _call(self, what: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransientFetchError(f"{what} timed out after {self.timeout}s", provider=self.name) from exc
        except (RateLimited, TransientFetchError):
            raise
        except Exception as exc:
            raise classify_rpc_error(exc, self.name, what) from exc

    async def get_latest_block_number(self) -> int:
        return await self._call("eth_blockNumber", self.w3.eth.block_number)

    async def get_block(self, block_number: int) -> BlockRef:
        block = await self._call(
            f"eth_getBlockByNumber({block_number})",
            self.w3.eth.get_block(block_number, full_transactions=False),
        )
        return BlockRef(number=int(block["number"]), timestamp=int(block["timestamp"]))

    async def get_balance(self, address: str, block_number: int | str = "latest") -> float:
        """Get balance in native token at a block."""
        wei = await self._call(
            f"eth_getBalance({address}@{block_number})",
            self.w3.eth.get_balance(self.w3.to_checksum_address(address), block_identifier=block_number),
        )
        return float(self.w3.from_wei(wei, "ether"))

    async def get_token_balance(self, wallet: str, token: str, block_number: int) -> int:
        contract = self.w3.eth.contract(address=self.w3.to_checksum_address(token), abi=ERC20_ABI)
        call = contract.functions.balanceOf(self.w3.to_checksum_address(wallet)).call(block_identifier=block_number)
        return int(await self._call(f"balanceOf({token}@{block_number})", call))

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        topics: list[str],
        address: str | list[str] | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"fromBlock": from_block, "toBlock": to_block, "topics": topics}
        if address:
            if isinstance(address, list):
                params["address"] = [self.w3.to_checksum_address(a) for a in address]
            else:
                params["address"] = self.w3.to_checksum_address(address)
        logs = await self._call(f"eth_getLogs({from_block}-{to_block})", self.w3.eth.get_logs(params))
        return [dict(log) for log in logs]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        tx = await self._call(f"eth_getTransactionByHash({tx_hash})", self.w3.eth.get_transaction(tx_hash))
        return dict(tx)

    async def get_pool_tokens(self, pool: str) -> tuple[str, str]:
        contract = self.w3.eth.contract(address=self.w3.to_checksum_address(pool), abi=POOL_ABI)
        token0, token1 = await asyncio.gather(
            self._call(f"token0({pool})", contract.functions.token0().call()),
            self._call(f"token1({pool})", contract.functions.token1().call()),
        )
        return str(token0).lower(), str(token1).lower()

    async def get_erc20_metadata(self, token_address: str) -> TokenMetadata | None:
        """Fetch ERC-20 symbol/name/decimals via on-chain calls."""
        contract = self.w3.eth.contract(address=self.w3.to_checksum_address(token_address), abi=ERC20_ABI)
        try:
            decimals = await self._call("decimals()", contract.functions.decimals().call())
        except RateLimited:
            raise
        except TransientFetchError as exc:
            logger.debug("decimals() failed for %s: %s", token_address, exc)
            return None
        try:
            symbol = await self._call("symbol()", contract.functions.symbol().call())
        except RateLimited:
            raise
        except TransientFetchError:
            symbol = ""
        return TokenMetadata(address=token_address.lower(), symbol=symbol or "", decimals=int(decimals))
