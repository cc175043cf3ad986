import pytest

from tests.conftest import TOKEN_A, WALLET
from whaletrace.chain.gateway import ProviderGateway
from whaletrace.config import Settings
from whaletrace.errors import RateLimited, TransientFetchError
from whaletrace.models.schema import TokenMetadata


class StubProvider:
    chain_id = 1

    def __init__(self, balance_error=None, onchain=None):
        self.balance_error = balance_error
        self.onchain = onchain
        self.metadata_calls = 0

    async def get_token_balance(self, wallet, token, block_number):
        if self.balance_error is not None:
            raise self.balance_error
        return 42

    async def get_balance(self, address, block_number):
        raise TransientFetchError("node down")

    async def get_erc20_metadata(self, token_address):
        self.metadata_calls += 1
        return self.onchain


class StubAlchemy:
    def __init__(self, metadata=None, error=None):
        self.metadata = metadata
        self.error = error
        self.calls = 0

    async def token_metadata(self, token_address):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.metadata


def _gateway(provider=None, alchemy=None) -> ProviderGateway:
    return ProviderGateway(provider=provider or StubProvider(), alchemy=alchemy or StubAlchemy(), oracle=None)


async def test_token_balance_degrades_to_zero():
    gateway = _gateway(StubProvider(balance_error=TransientFetchError("reverted")))
    assert await gateway.token_balance(WALLET, TOKEN_A, 10) == 0


async def test_token_balance_rate_limit_propagates():
    gateway = _gateway(StubProvider(balance_error=RateLimited("Infura", 1)))
    with pytest.raises(RateLimited):
        await gateway.token_balance(WALLET, TOKEN_A, 10)


async def test_eth_balance_errors_propagate():
    with pytest.raises(TransientFetchError):
        await _gateway().eth_balance(WALLET, 10)


async def test_metadata_is_completed_onchain_and_cached():
    alchemy = StubAlchemy(metadata=TokenMetadata(address=TOKEN_A, symbol="TKA", decimals=None))
    provider = StubProvider(onchain=TokenMetadata(address=TOKEN_A, symbol="ONCHAIN", decimals=8))
    gateway = _gateway(provider, alchemy)

    metadata = await gateway.token_metadata(TOKEN_A.upper().replace("0X", "0x"))
    assert (metadata.symbol, metadata.decimals) == ("TKA", 8)
    await gateway.token_metadata(TOKEN_A)
    assert (alchemy.calls, provider.metadata_calls) == (1, 1)


async def test_missing_metadata_is_not_cached():
    alchemy = StubAlchemy(error=TransientFetchError("alchemy down"))
    gateway = _gateway(StubProvider(onchain=None), alchemy)

    assert await gateway.token_metadata(TOKEN_A) is None
    assert await gateway.token_metadata(TOKEN_A) is None
    assert alchemy.calls == 2


async def test_metadata_without_decimals_is_looked_up_again():
    alchemy = StubAlchemy(metadata=TokenMetadata(address=TOKEN_A, symbol="TKA", decimals=None))
    provider = StubProvider(onchain=None)
    gateway = _gateway(provider, alchemy)

    first = await gateway.token_metadata(TOKEN_A)
    assert (first.symbol, first.decimals) == ("TKA", None)

    provider.onchain = TokenMetadata(address=TOKEN_A, symbol="TKA", decimals=18)
    second = await gateway.token_metadata(TOKEN_A)
    assert second.decimals == 18
    assert (alchemy.calls, provider.metadata_calls) == (2, 2)


def test_from_settings_hands_settings_to_every_client():
    settings = Settings(
        _env_file=None,
        alchemy_api_key="alchemy-key",
        etherscan_api_key="etherscan-key",
        coingecko_api_key="cg-key",
        request_timeout_seconds=7.0,
    )
    gateway = ProviderGateway.from_settings(chain_id=8453, settings=settings)

    assert gateway.chain_id == 8453
    assert gateway.alchemy.url == "https://base-mainnet.g.alchemy.com/v2/alchemy-key"
    assert gateway.etherscan.api_key == "etherscan-key"
    assert gateway.oracle.coingecko_api_key == "cg-key"
    assert gateway.provider.timeout == 7.0
    assert gateway.oracle.timeout == 7.0
