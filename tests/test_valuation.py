from datetime import timedelta

import pytest

from tests.conftest import T0, T1, TOKEN_A, TOKEN_B, USDC, WALLET
from whaletrace.analysis.valuation import ValuationEngine
from whaletrace.errors import FatalAnalysisError, RateLimited, TransientFetchError
from whaletrace.models.schema import AssetTransfer, ResolvedWindow, TokenMetadata

WINDOW = ResolvedWindow(t0=T0, t1=T1, t0_block=19, t1_block=22, window_key="w")
OTHER = "0x2222222222222222222222222222222222222222"


def _eth(gateway, t0_balance: float, t1_balance: float, price_t0: float = 2000.0, price_t1: float = 2000.0):
    gateway.eth_balances[(WALLET, 19)] = t0_balance
    gateway.eth_balances[(WALLET, 22)] = t1_balance
    gateway.prices[(None, T0)] = price_t0
    gateway.prices[(None, T1)] = price_t1


def _token(gateway, token: str, t0_units: int, t1_units: int, symbol: str = "TKN", decimals: int = 18):
    gateway.holdings.setdefault(WALLET, []).append(token)
    gateway.metadata[token] = TokenMetadata(address=token, symbol=symbol, decimals=decimals)
    gateway.token_balances[(WALLET, token, 19)] = t0_units
    gateway.token_balances[(WALLET, token, 22)] = t1_units


async def test_eth_only_wallet(gateway, wallet):
    _eth(gateway, 1.0, 1.5, price_t0=2000.0, price_t1=2200.0)
    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)

    assert analysis.value_t0_usd == pytest.approx(2000.0)
    assert analysis.value_t1_usd == pytest.approx(3300.0)
    assert analysis.simple_return == pytest.approx(0.65)
    assert analysis.adjusted_return == pytest.approx(0.65)
    assert analysis.token_count == 1
    assert analysis.notes is None
    assert not analysis.price_missing


async def test_zero_start_value_has_no_return(gateway, wallet):
    _eth(gateway, 0.0, 1.0)
    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)

    assert analysis.value_t0_usd == 0.0
    assert analysis.simple_return is None
    assert analysis.adjusted_return is None
    assert not analysis.funding_heavy
    assert not analysis.stable_heavy


async def test_funding_heavy_boundary_is_inclusive(gateway, wallet):
    _eth(gateway, 1.0, 1.0, price_t0=1000.0, price_t1=1000.0)
    gateway.prices[(None, T0 + timedelta(hours=1))] = 1000.0
    gateway.transfers[WALLET] = [
        AssetTransfer(block_number=20, from_address=OTHER, to_address=WALLET, amount=0.5,
                      timestamp=T0 + timedelta(hours=1)),
    ]
    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)

    assert analysis.net_cash_flow_usd == pytest.approx(500.0)
    assert analysis.funding_heavy
    assert analysis.adjusted_return == pytest.approx(-0.5)
    assert analysis.notes == "NetCF=500.00"


async def test_just_below_funding_threshold(gateway, wallet):
    _eth(gateway, 1.0, 1.0, price_t0=1000.0, price_t1=1000.0)
    gateway.prices[(None, T1)] = 1000.0
    gateway.transfers[WALLET] = [
        AssetTransfer(block_number=20, from_address=WALLET, to_address=OTHER, amount=0.499),
    ]
    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)

    # no transfer timestamp: priced at t1
    assert analysis.net_cash_flow_usd == pytest.approx(-499.0)
    assert not analysis.funding_heavy


async def test_stable_heavy_and_truncation(gateway, wallet):
    _eth(gateway, 0.05, 0.05, price_t0=2000.0, price_t1=2000.0)
    _token(gateway, USDC, 1_000 * 10**6, 1_000 * 10**6, symbol="USDC", decimals=6)
    for i in range(3):
        gateway.holdings[WALLET].append(f"0x{i:040x}")

    analysis = await ValuationEngine(gateway, token_limit=1).analyze_wallet(wallet, WINDOW)

    # 1000 USDC vs 100 USD of ETH
    assert analysis.value_t0_usd == pytest.approx(1100.0)
    assert analysis.stable_heavy
    assert analysis.token_count == 2
    assert analysis.notes == "TruncatedTokens=3"


async def test_missing_price_is_recorded_not_fatal(gateway, wallet):
    _eth(gateway, 1.0, 1.0)
    _token(gateway, TOKEN_A, 10 * 10**18, 10 * 10**18)
    gateway.prices[(TOKEN_A, T0)] = 5.0
    gateway.prices[(TOKEN_A, T1)] = 0.0

    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)

    assert analysis.price_missing
    assert analysis.notes == f"MissingPrices={TOKEN_A}"
    assert analysis.value_t0_usd == pytest.approx(2050.0)
    assert analysis.value_t1_usd == pytest.approx(2000.0)


async def test_tokens_without_balance_are_skipped(gateway, wallet):
    _eth(gateway, 1.0, 1.0)
    _token(gateway, TOKEN_A, 0, 0)
    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)
    assert not analysis.price_missing
    assert analysis.token_count == 2


async def test_first_transfer_decimals_fill_missing_metadata(gateway, wallet):
    _eth(gateway, 0.0, 0.0)
    _token(gateway, TOKEN_B, 2 * 10**6, 2 * 10**6)
    gateway.metadata[TOKEN_B] = TokenMetadata(address=TOKEN_B, symbol="TKB", decimals=None)
    gateway.prices[(TOKEN_B, None)] = 3.0
    wallet = wallet.model_copy(update={"first_transfer_token": TOKEN_B, "first_transfer_decimals": 6})

    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)
    assert analysis.value_t0_usd == pytest.approx(6.0)


async def test_rate_limit_propagates(gateway, wallet):
    _eth(gateway, 1.0, 1.0)
    _token(gateway, TOKEN_A, 10, 10)
    gateway.errors["price_at"] = RateLimited("CoinGecko", 300)
    with pytest.raises(RateLimited):
        await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)


async def test_eth_balance_failure_is_fatal(gateway, wallet):
    gateway.errors["eth_balance"] = TransientFetchError("node down")
    with pytest.raises(FatalAnalysisError) as info:
        await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)
    assert info.value.address == WALLET


async def test_cash_flow_failure_degrades_to_zero(gateway, wallet):
    _eth(gateway, 1.0, 1.0)
    gateway.errors["asset_transfers"] = TransientFetchError("alchemy down")
    analysis = await ValuationEngine(gateway).analyze_wallet(wallet, WINDOW)
    assert analysis.net_cash_flow_usd == 0.0
