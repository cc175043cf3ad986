from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from whaletrace.config import Settings
from whaletrace.errors import RangeTooLargeError
from whaletrace.models.schema import AssetTransfer, BlockRef, CandidateWallet, TokenMetadata
from whaletrace.storage.database import get_connection

WALLET = "0x1111111111111111111111111111111111111111"
TOKEN_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TOKEN_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"

T0 = datetime(2025, 10, 10, 19, 0, tzinfo=timezone.utc)
T1 = datetime(2025, 10, 10, 22, 0, tzinfo=timezone.utc)


class FakeGateway:
    """In-memory stand-in for ProviderGateway.

    Blocks have ``timestamp = number * block_time``. Balances, holdings, prices
    and transfers are plain dicts the test fills in. ``errors`` maps a method
    name to an exception (or list of exceptions, consumed in order) to raise.
    """

    def __init__(self, chain_id: int = 1, latest: int = 100, block_time: int = 10):
        self.chain_id = chain_id
        self.latest = latest
        self.block_time = block_time
        self.block_lookup: dict[tuple[int, str], int] | None = None
        self.eth_balances: dict[tuple[str, int], float] = {}
        self.token_balances: dict[tuple[str, str, int], int] = {}
        self.holdings: dict[str, list[str]] = {}
        self.metadata: dict[str, TokenMetadata] = {}
        self.prices: dict[tuple[str | None, datetime], float] = {}
        self.default_price = 0.0
        self.transfers: dict[str, list[AssetTransfer]] = {}
        self.blocks_with_transfers: dict[int, list[AssetTransfer]] = {}
        self.logs: list[dict] = []
        self.max_log_span: int | None = None
        self.log_calls: list[tuple[int, int]] = []
        self.block_calls: list[int] = []
        self.errors: dict[str, object] = {}
        self.calls: dict[str, int] = {}

    def _maybe_raise(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        error = self.errors.get(name)
        if isinstance(error, list):
            if error:
                raise error.pop(0)
        elif error is not None:
            raise error

    @property
    def has_block_lookup(self) -> bool:
        return self.block_lookup is not None

    async def latest_block(self) -> BlockRef:
        self._maybe_raise("latest_block")
        return BlockRef(number=self.latest, timestamp=self.latest * self.block_time)

    async def get_block(self, block_number: int) -> BlockRef:
        self._maybe_raise("get_block")
        self.block_calls.append(block_number)
        return BlockRef(number=block_number, timestamp=block_number * self.block_time)

    async def block_by_timestamp(self, timestamp: int, closest: str) -> int | None:
        self._maybe_raise("block_by_timestamp")
        if self.block_lookup is None:
            return None
        return self.block_lookup[(timestamp, closest)]

    async def eth_balance(self, address: str, block_number: int) -> float:
        self._maybe_raise("eth_balance")
        return self.eth_balances.get((address.lower(), block_number), 0.0)

    async def token_balance(self, address: str, token: str, block_number: int) -> int:
        self._maybe_raise("token_balance")
        return self.token_balances.get((address.lower(), token.lower(), block_number), 0)

    async def token_holdings(self, address: str) -> list[str]:
        self._maybe_raise("token_holdings")
        return list(self.holdings.get(address.lower(), []))

    async def token_metadata(self, token_address: str) -> TokenMetadata | None:
        self._maybe_raise("token_metadata")
        return self.metadata.get(token_address.lower())

    async def asset_transfers(self, address: str, from_block: int, to_block: int) -> list[AssetTransfer]:
        self._maybe_raise("asset_transfers")
        return list(self.transfers.get(address.lower(), []))

    async def block_transfers(self, block_number: int) -> list[AssetTransfer]:
        self._maybe_raise("block_transfers")
        return list(self.blocks_with_transfers.get(block_number, []))

    async def logs_in_range(self, topic: str, from_block: int, to_block: int, address=None) -> list[dict]:
        self._maybe_raise("logs_in_range")
        self.log_calls.append((from_block, to_block))
        if self.max_log_span is not None and to_block - from_block + 1 > self.max_log_span:
            raise RangeTooLargeError(f"block range {from_block}-{to_block} too large")
        return [
            log for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block and log["topics"][0] == topic
        ]

    async def get_transaction(self, tx_hash: str) -> dict:
        return {"from": WALLET, "to": None}

    async def pool_tokens(self, pool: str) -> tuple[str, str]:
        return TOKEN_A, TOKEN_B

    async def price_at(self, asset, timestamp, is_stable: bool = False, symbol: str | None = None) -> float:
        self._maybe_raise("price_at")
        if is_stable:
            return 1.0
        key = (asset.lower() if asset else None, timestamp)
        if key in self.prices:
            return self.prices[key]
        return self.prices.get((asset.lower() if asset else None, None), self.default_price)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def conn(tmp_path: Path):
    connection = get_connection(tmp_path / "test.duckdb")
    yield connection
    connection.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        window_start_utc=T0,
        window_end_utc=T1,
        window_t0_block=19,
        window_t1_block=22,
        duckdb_path=tmp_path / "test.duckdb",
        progress_path=tmp_path / "progress.json",
        spider_state_path=tmp_path / "spider_state.json",
        snapshot_path=tmp_path / "live_pnl_results.csv",
        rate_limit_backoff_seconds=0,
    )


@pytest.fixture
def wallet() -> CandidateWallet:
    return CandidateWallet(id=1, address=WALLET, detected_at_block=10)
