"""Single facade over node RPC, Alchemy, Etherscan and the price oracle."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from datetime import datetime
from typing import Any

from whaletrace.chain.alchemy import AlchemyClient
from whaletrace.chain.etherscan import Closest, EtherscanClient
from whaletrace.chain.provider import ChainProvider
from whaletrace.config import Settings, get_settings
from whaletrace.errors import RateLimited, TransientFetchError
from whaletrace.models.schema import AssetTransfer, BlockRef, TokenMetadata
from whaletrace.tokens.pricing import PriceOracle

logger = logging.getLogger(__name__)


class ProviderGateway:
    """Every chain/price read the pipeline performs goes through here.

    Failure contract: ``RateLimited`` always propagates; ``TransientFetchError``
    propagates from critical reads (blocks, ETH balance, transfers) and degrades
    to a neutral value for token balances, metadata and prices.
    """

    def __init__(
        self,
        provider: ChainProvider,
        alchemy: AlchemyClient,
        oracle: PriceOracle,
        etherscan: EtherscanClient | None = None,
        metadata_cache: MutableMapping[str, TokenMetadata] | None = None,
        block_cache: MutableMapping[tuple[int, str], int] | None = None,
    ):
        self.provider = provider
        self.alchemy = alchemy
        self.oracle = oracle
        self.etherscan = etherscan
        self._metadata_cache = metadata_cache if metadata_cache is not None else {}
        self._block_cache = block_cache if block_cache is not None else {}

    @classmethod
    def from_settings(cls, chain_id: int = 1, settings: Settings | None = None) -> ProviderGateway:
        """Build every client from settings. Missing credentials raise ConfigurationError here."""
        settings = settings or get_settings()
        etherscan = EtherscanClient(chain_id=chain_id, settings=settings) if settings.etherscan_api_key else None
        if etherscan is None:
            logger.info("No Etherscan key configured; block lookups will use binary search")
        return cls(
            provider=ChainProvider(chain_id, settings=settings),
            alchemy=AlchemyClient(chain_id=chain_id, settings=settings),
            oracle=PriceOracle(chain_id=chain_id, settings=settings),
            etherscan=etherscan,
        )

    @property
    def chain_id(self) -> int:
        return self.provider.chain_id

    @property
    def has_block_lookup(self) -> bool:
        return self.etherscan is not None

    # --- Blocks ---

    async def latest_block(self) -> BlockRef:
        number = await self.provider.get_latest_block_number()
        return await self.provider.get_block(number)

    async def get_block(self, block_number: int) -> BlockRef:
        return await self.provider.get_block(block_number)

    async def block_by_timestamp(self, timestamp: int, closest: Closest) -> int | None:
        """Explicit timestamp lookup; None when no lookup provider is configured."""
        if self.etherscan is None:
            return None
        key = (int(timestamp), closest)
        if key in self._block_cache:
            logger.debug("Block cache hit: %d (%s) -> #%d", timestamp, closest, self._block_cache[key])
            return self._block_cache[key]
        block_number = await self.etherscan.block_by_timestamp(timestamp, closest)
        self._block_cache[key] = block_number
        return block_number

    # --- Balances and holdings ---

    async def eth_balance(self, address: str, block_number: int) -> float:
        return await self.provider.get_balance(address, block_number)

    async def token_balance(self, address: str, token: str, block_number: int) -> int:
        try:
            return await self.provider.get_token_balance(address, token, block_number)
        except RateLimited:
            raise
        except TransientFetchError as exc:
            logger.warning("Token balance fetch failed: %s @ block #%d: %s", token, block_number, exc)
            return 0

    async def token_holdings(self, address: str) -> list[str]:
        return await self.alchemy.token_holdings(address)

    async def token_metadata(self, token_address: str) -> TokenMetadata | None:
        """Alchemy metadata, completed from on-chain ERC-20 calls.

        Cached per address once decimals are known; incomplete results are
        returned but looked up again next time.
        """
        key = token_address.lower()
        if key in self._metadata_cache:
            return self._metadata_cache[key]

        metadata: TokenMetadata | None = None
        try:
            metadata = await self.alchemy.token_metadata(token_address)
        except RateLimited:
            raise
        except TransientFetchError as exc:
            logger.warning("Token metadata lookup failed for %s: %s", token_address, exc)

        if metadata is None or not metadata.decimals:
            onchain = await self.provider.get_erc20_metadata(token_address)
            if onchain is not None:
                if metadata is None:
                    metadata = onchain
                else:
                    metadata = metadata.model_copy(update={
                        "decimals": onchain.decimals,
                        "symbol": metadata.symbol or onchain.symbol,
                    })

        if metadata is not None and metadata.decimals is not None:
            self._metadata_cache[key] = metadata
            logger.debug("Token metadata cached: %s (decimals=%s, symbol=%s)", key, metadata.decimals, metadata.symbol)
        return metadata

    # --- Transfers and logs ---

    async def asset_transfers(self, address: str, from_block: int, to_block: int) -> list[AssetTransfer]:
        return await self.alchemy.asset_transfers(address, from_block, to_block)

    async def block_transfers(self, block_number: int) -> list[AssetTransfer]:
        return await self.alchemy.block_transfers(block_number)

    async def logs_in_range(
        self,
        topic: str,
        from_block: int,
        to_block: int,
        address: str | list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """One eth_getLogs call. Oversized ranges raise RangeTooLargeError."""
        return await self.provider.get_logs(from_block, to_block, [topic], address=address)

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        return await self.provider.get_transaction(tx_hash)

    async def pool_tokens(self, pool: str) -> tuple[str, str]:
        return await self.provider.get_pool_tokens(pool)

    # --- Prices ---

    async def price_at(
        self,
        asset: str | None,
        timestamp: datetime,
        is_stable: bool = False,
        symbol: str | None = None,
    ) -> float:
        return await self.oracle.price_at(asset, timestamp, is_stable=is_stable, symbol=symbol)
