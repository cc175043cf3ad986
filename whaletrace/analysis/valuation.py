"""Value a wallet's holdings at t0 and t1 and split the change into return vs. cash flow."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from whaletrace.chain.gateway import ProviderGateway
from whaletrace.errors import ConfigurationError, FatalAnalysisError, RateLimited, TransientFetchError
from whaletrace.models.schema import CandidateWallet, ResolvedWindow, WalletAnalysis
from whaletrace.tokens.constants import is_stablecoin

logger = logging.getLogger(__name__)

STABLE_HEAVY_RATIO = 0.90
FUNDING_HEAVY_RATIO = 0.50
NATIVE_LABEL = "ETH"


@dataclass(frozen=True)
class TokenValue:
    address: str
    value_t0: float
    value_t1: float
    stable: bool
    price_missing: bool


@dataclass
class _Holdings:
    value_t0: float = 0.0
    value_t1: float = 0.0
    stable_t0: float = 0.0
    missing: list[str] = field(default_factory=list)

    def add(self, token: TokenValue) -> None:
        self.value_t0 += token.value_t0
        self.value_t1 += token.value_t1
        if token.stable:
            self.stable_t0 += token.value_t0
        if token.price_missing:
            self.missing.append(token.address)


def _resolve_decimals(metadata_decimals: int | None, wallet: CandidateWallet, token: str) -> int:
    if metadata_decimals and metadata_decimals > 0:
        return metadata_decimals
    if (
        wallet.first_transfer_token
        and wallet.first_transfer_decimals is not None
        and wallet.first_transfer_token.lower() == token.lower()
    ):
        return wallet.first_transfer_decimals
    return 18


def _returns(value_t0: float, value_t1: float, net_cash_flow: float) -> tuple[float | None, float | None]:
    if value_t0 <= 0:
        return None, None
    simple = (value_t1 - value_t0) / value_t0
    adjusted = (value_t1 - value_t0 - net_cash_flow) / value_t0
    return simple, adjusted


def _notes(truncated: int, missing: list[str], net_cash_flow: float) -> str | None:
    parts = []
    if truncated > 0:
        parts.append(f"TruncatedTokens={truncated}")
    if missing:
        parts.append(f"MissingPrices={';'.join(missing)}")
    if net_cash_flow != 0:
        parts.append(f"NetCF={net_cash_flow:,.2f}")
    return " | ".join(parts) if parts else None


class ValuationEngine:
    """Per-wallet portfolio valuation between two resolved blocks.

    Each call builds its own accumulator and returns a frozen WalletAnalysis,
    so a failure on one wallet never leaks into another.
    """

    def __init__(self, gateway: ProviderGateway, token_limit: int = 10):
        self.gateway = gateway
        self.chain_id = gateway.chain_id
        self.token_limit = token_limit

    async def analyze_wallet(self, wallet: CandidateWallet, window: ResolvedWindow) -> WalletAnalysis:
        """Raises RateLimited for provider throttling and FatalAnalysisError for anything unexpected."""
        try:
            return await self._analyze(wallet, window)
        except (RateLimited, ConfigurationError, FatalAnalysisError):
            raise
        except Exception as exc:
            logger.error("Unexpected failure while analysing %s: %s", wallet.address, exc)
            raise FatalAnalysisError(wallet.address, exc) from exc

    async def _analyze(self, wallet: CandidateWallet, window: ResolvedWindow) -> WalletAnalysis:
        address = wallet.address.lower()
        holdings = _Holdings()

        tokens = await self.gateway.token_holdings(address)
        to_process = tokens[: self.token_limit]
        truncated = len(tokens) - len(to_process)
        if truncated:
            logger.info("Token list for %s truncated from %d to %d", address, len(tokens), len(to_process))

        holdings.add(await self._value_native(address, window))
        for token in to_process:
            value = await self._value_token(wallet, token, window)
            if value is not None:
                holdings.add(value)

        net_cash_flow = await self.net_cash_flow(address, window)
        simple_return, adjusted_return = _returns(holdings.value_t0, holdings.value_t1, net_cash_flow)
        value_t0 = holdings.value_t0

        analysis = WalletAnalysis(
            wallet_id=wallet.id or 0,
            wallet_address=address,
            t0_block=window.t0_block,
            t1_block=window.t1_block,
            t0_timestamp=window.t0,
            t1_timestamp=window.t1,
            value_t0_usd=max(0.0, value_t0),
            value_t1_usd=max(0.0, holdings.value_t1),
            simple_return=simple_return,
            net_cash_flow_usd=net_cash_flow,
            adjusted_return=adjusted_return,
            funding_heavy=value_t0 > 0 and abs(net_cash_flow) / value_t0 >= FUNDING_HEAVY_RATIO,
            stable_heavy=value_t0 > 0 and holdings.stable_t0 / value_t0 >= STABLE_HEAVY_RATIO,
            price_missing=bool(holdings.missing),
            token_count=len(to_process) + 1,
            notes=_notes(truncated, holdings.missing, net_cash_flow),
            analyzed_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Wallet %s: V0=$%.2f V1=$%.2f return=%s",
            address, analysis.value_t0_usd, analysis.value_t1_usd,
            f"{simple_return:.2%}" if simple_return is not None else "n/a",
        )
        return analysis

    async def _value_native(self, address: str, window: ResolvedWindow) -> TokenValue:
        # ETH balance is critical: errors propagate
        eth_t0 = await self.gateway.eth_balance(address, window.t0_block)
        eth_t1 = await self.gateway.eth_balance(address, window.t1_block)
        price_t0 = await self.gateway.price_at(None, window.t0)
        price_t1 = await self.gateway.price_at(None, window.t1)
        held = eth_t0 > 0 or eth_t1 > 0
        return TokenValue(
            address=NATIVE_LABEL,
            value_t0=eth_t0 * price_t0,
            value_t1=eth_t1 * price_t1,
            stable=False,
            price_missing=held and (price_t0 <= 0 or price_t1 <= 0),
        )

    async def _value_token(self, wallet: CandidateWallet, token: str, window: ResolvedWindow) -> TokenValue | None:
        """None when the wallet held none of the token at either block."""
        address = wallet.address.lower()
        try:
            metadata = await self.gateway.token_metadata(token)
            symbol = metadata.symbol if metadata is not None else None
            decimals = _resolve_decimals(metadata.decimals if metadata is not None else None, wallet, token)

            balance_t0 = await self.gateway.token_balance(address, token, window.t0_block)
            balance_t1 = await self.gateway.token_balance(address, token, window.t1_block)
            if balance_t0 == 0 and balance_t1 == 0:
                return None

            amount_t0 = balance_t0 / 10 ** decimals
            amount_t1 = balance_t1 / 10 ** decimals
            stable = is_stablecoin(self.chain_id, token, symbol)
            price_t0 = await self.gateway.price_at(token, window.t0, is_stable=stable, symbol=symbol)
            price_t1 = await self.gateway.price_at(token, window.t1, is_stable=stable, symbol=symbol)
        except RateLimited:
            raise
        except Exception as exc:
            logger.warning("Token processing failed for %s in %s: %s", token, address, exc)
            return TokenValue(address=token, value_t0=0.0, value_t1=0.0, stable=False, price_missing=True)

        return TokenValue(
            address=token,
            value_t0=amount_t0 * price_t0,
            value_t1=amount_t1 * price_t1,
            stable=stable,
            price_missing=price_t0 <= 0 or price_t1 <= 0,
        )

    async def net_cash_flow(self, address: str, window: ResolvedWindow) -> float:
        """USD in minus USD out over the window, each transfer priced at its own time (t1 if unknown)."""
        try:
            transfers = await self.gateway.asset_transfers(address, window.t0_block, window.t1_block)
            net = 0.0
            for transfer in transfers:
                timestamp = transfer.timestamp or window.t1
                price = await self.gateway.price_at(transfer.token_address, timestamp, symbol=transfer.symbol)
                if price <= 0:
                    continue
                usd = transfer.amount * price
                if transfer.is_inbound_for(address):
                    net += usd
                elif transfer.is_outbound_for(address):
                    net -= usd
            return net
        except TransientFetchError as exc:
            logger.warning("Cash flow calculation failed for %s: %s", address, exc)
            return 0.0
