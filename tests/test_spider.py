import asyncio
import json
from datetime import datetime, timezone

import pytest

from tests.conftest import TOKEN_A, USDC, WALLET
from whaletrace.discovery.spider import CandidateSpider
from whaletrace.errors import RateLimited, TransientFetchError
from whaletrace.models.schema import AssetTransfer
from whaletrace.storage.database import count_pending, get_candidate
from whaletrace.tokens.constants import ZERO_ADDRESS

OTHER = "0x2222222222222222222222222222222222222222"


def _transfer(block: int, sender: str, receiver: str, amount: float, token: str = USDC, **kwargs) -> AssetTransfer:
    return AssetTransfer(
        block_number=block,
        from_address=sender,
        to_address=receiver,
        token_address=token,
        symbol="USDC" if token == USDC else "TKA",
        decimals=6 if token == USDC else 18,
        amount=amount,
        **kwargs,
    )


@pytest.fixture
def spider(conn, gateway, tmp_path):
    gateway.prices[(USDC, None)] = 1.0
    gateway.prices[(TOKEN_A, None)] = 2.0
    return CandidateSpider(conn, gateway, min_transfer_usd=30_000.0, state_path=tmp_path / "spider.json", progress=False)


async def test_large_transfers_become_candidates(spider, gateway, conn):
    gateway.blocks_with_transfers = {
        5: [
            _transfer(5, WALLET, OTHER, 50_000.0),
            _transfer(5, OTHER, WALLET, 100.0),
            _transfer(5, ZERO_ADDRESS, WALLET, 20_000.0, token=TOKEN_A),
        ],
    }
    result = await spider.scan(from_block=4, to_block=6)

    assert (result.blocks_scanned, result.transfers_seen, result.candidates_added) == (3, 3, 2)
    assert count_pending(conn) == 2

    wallet = get_candidate(conn, WALLET)
    assert wallet.detected_at_block == 5
    assert wallet.first_transfer_token == USDC
    assert wallet.first_transfer_decimals == 6
    # no transfer timestamp: block time is used
    assert wallet.detected_at == datetime.fromtimestamp(50, tz=timezone.utc)
    assert get_candidate(conn, ZERO_ADDRESS) is None

    assert json.loads(spider.state_path.read_text())["last_processed_block"] == 6


async def test_known_addresses_are_not_counted_twice(spider, gateway):
    gateway.blocks_with_transfers = {
        1: [_transfer(1, WALLET, OTHER, 40_000.0)],
        2: [_transfer(2, OTHER, WALLET, 40_000.0)],
    }
    result = await spider.scan(from_block=1, to_block=2)
    assert result.candidates_added == 2


async def test_resume_from_saved_state(spider, gateway):
    spider.save_state(95)
    result = await spider.scan()
    assert (result.from_block, result.to_block, result.blocks_scanned) == (96, 100, 5)


async def test_default_range_without_state(spider, gateway):
    result = await spider.scan()
    assert (result.from_block, result.to_block) == (90, 100)


async def test_unreadable_state_is_ignored(spider):
    spider.state_path.write_text("{}")
    assert spider.load_state() is None


async def test_fetch_failures_skip_the_block(spider, gateway):
    gateway.errors["block_transfers"] = TransientFetchError("alchemy down")
    result = await spider.scan(from_block=1, to_block=3)
    assert result.transfers_seen == 0
    assert result.last_block == 3


async def test_rate_limit_stops_scan_but_keeps_progress(spider, gateway):
    gateway.blocks_with_transfers = {1: [_transfer(1, WALLET, OTHER, 40_000.0)]}
    gateway.errors["price_at"] = [RateLimited("CoinGecko", 300)]
    with pytest.raises(RateLimited):
        await spider.scan(from_block=1, to_block=3)
    assert spider.load_state() is None

    gateway.errors.clear()
    spider.save_state(0)
    result = await spider.scan(to_block=3)
    assert result.candidates_added == 2
    assert spider.load_state() == 3


async def test_stop_signal(spider):
    stop = asyncio.Event()
    stop.set()
    result = await spider.scan(from_block=1, to_block=3, stop=stop)
    assert result.cancelled
    assert result.blocks_scanned == 0
    assert not spider.state_path.exists()


async def test_large_native_eth_transfer_becomes_candidate(spider, gateway, conn):
    gateway.prices[(None, None)] = 4_000.0
    gateway.blocks_with_transfers = {
        7: [
            AssetTransfer(block_number=7, from_address=WALLET, to_address=OTHER, symbol="ETH", amount=10.0),
            AssetTransfer(block_number=7, from_address=OTHER, to_address=WALLET, symbol="ETH", amount=1.0),
        ],
    }
    result = await spider.scan(from_block=7, to_block=7)

    assert (result.transfers_seen, result.candidates_added) == (2, 2)
    wallet = get_candidate(conn, WALLET)
    assert wallet.first_transfer_token is None
    assert wallet.first_transfer_amount == 10.0
    assert wallet.first_transfer_decimals == 18
