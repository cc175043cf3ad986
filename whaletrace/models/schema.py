"""Pydantic v2 data models with multi-chain support."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class BlockRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    timestamp: int = Field(description="Unix seconds")


class ResolvedWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    t0: datetime
    t1: datetime
    t0_block: int
    t1_block: int
    window_key: str


class TokenMetadata(BaseModel):
    address: str
    symbol: str = ""
    name: str = ""
    decimals: int | None = None


class CandidateWallet(BaseModel):
    id: int | None = None
    address: str
    detected_at_block: int
    detected_at: datetime | None = None
    first_transfer_amount: float = 0.0
    first_transfer_token: str | None = None
    first_transfer_decimals: int | None = None
    analyzed: bool = False


class WalletAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    wallet_id: int
    wallet_address: str
    t0_block: int
    t1_block: int
    t0_timestamp: datetime
    t1_timestamp: datetime
    value_t0_usd: float = Field(ge=0)
    value_t1_usd: float = Field(ge=0)
    simple_return: float | None = None
    net_cash_flow_usd: float = 0.0
    adjusted_return: float | None = None
    funding_heavy: bool = False
    stable_heavy: bool = False
    price_missing: bool = False
    token_count: int = 0
    notes: str | None = None
    analyzed_at: datetime


class AssetTransfer(BaseModel):
    """Provider-native transfer record (native ETH when token_address is None)."""

    unique_id: str | None = None
    tx_hash: str | None = None
    block_number: int
    log_index: int | None = None
    from_address: str = ""
    to_address: str = ""
    token_address: str | None = None
    symbol: str | None = None
    decimals: int = 18
    amount: float
    timestamp: datetime | None = None

    def is_inbound_for(self, address: str) -> bool:
        return bool(self.to_address) and self.to_address.lower() == address.lower()

    def is_outbound_for(self, address: str) -> bool:
        return bool(self.from_address) and self.from_address.lower() == address.lower()


class ActivityEvent(BaseModel):
    """A decoded transfer or DEX swap, seen from the trader's side.

    asset_in is what the trader sent, asset_out is what the trader received.
    """

    chain_id: int = Field(default=1)
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime
    kind: Literal["transfer", "swap"] = "swap"
    dex: str | None = None
    trader: str
    counterparty: str
    router: str | None = None
    asset_in: str
    amount_in_raw: int = 0
    asset_out: str
    amount_out_raw: int = 0
    usd_in: float | None = None
    usd_out: float | None = None
    usd_notional: float | None = None
    via_aggregator: bool = False

    @property
    def key(self) -> tuple[int, str, int]:
        return (self.chain_id, self.tx_hash.lower(), self.log_index)


class AnalysisCheckpoint(BaseModel):
    last_processed_wallet_id: int = 0
    last_processed_address: str = ""
    total_wallets: int = 0
    processed_count: int = 0
    window_key: str
    started_at: datetime
    last_checkpoint: datetime
    state: Literal["running", "rate_limited", "completed", "aborted"] = "running"
    rate_limit_hit: bool = False
    rate_limit_provider: str | None = None
    next_retry_after: datetime | None = None
    completed: bool = False
    error_message: str | None = None


class Candidate(BaseModel):
    wallet: str
    w1_net: float = 0.0
    w1_volume: float = 0.0
    w1_swaps: int = 0
    w2_net: float = 0.0
    w2_volume: float = 0.0
    w2_swaps: int = 0
    chains: list[int] = Field(default_factory=list)


class PnlResult(BaseModel):
    realized: float = 0.0
    gross: float = 0.0
    trades: int = 0
    realized_tokens: int = 0


class ScoreComponents(BaseModel):
    t1_pnl: float = 0.0
    t7_pnl: float = 0.0
    win_rate: float = 0.0
    trade_ratio: float = 0.0
    impact: float = 0.0
    repeatability: float = 0.0
    liquidity: float = 0.0


class CandidateScore(BaseModel):
    wallet: str
    score: float
    normalized: ScoreComponents
    raw: dict[str, float]


class PriceSummary(BaseModel):
    priced: int = 0
    missing: int = 0
    filtered: int = 0


class RunReport(BaseModel):
    status: Literal["completed", "cancelled", "rate_limited"]
    window_key: str = ""
    processed: int = 0
    failed: int = 0
    remaining: int = 0
    rate_limit_provider: str | None = None
