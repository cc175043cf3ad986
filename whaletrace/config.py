"""Settings and analysis-window configuration, loaded from the environment and .env."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from whaletrace.chain.registry import CHAINS
from whaletrace.errors import ConfigurationError


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _require_utc(value: datetime, label: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() != timedelta(0):
        raise ConfigurationError(f"Analysis window timestamp {label} must be UTC, got {value.isoformat()}")
    return value.astimezone(timezone.utc)


class AnalysisWindowConfig(BaseModel):
    """Analysis window: explicit start/end, or offsets from a reference (or from now).

    Block overrides skip timestamp-to-block resolution entirely.
    """

    start_utc: datetime | None = None
    end_utc: datetime | None = None
    reference_utc: datetime | None = None
    t0_offset_hours: float | None = None
    t1_offset_hours: float | None = None
    t0_block: int | None = None
    t1_block: int | None = None

    def resolve_window(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Return (t0, t1) in UTC. Raises ConfigurationError when underspecified."""
        if self.start_utc is not None and self.end_utc is not None:
            t0 = _require_utc(self.start_utc, "start")
            t1 = _require_utc(self.end_utc, "end")
        elif self.reference_utc is not None and self._has_offsets():
            reference = _require_utc(self.reference_utc, "reference")
            t0 = reference + timedelta(hours=self.t0_offset_hours)
            t1 = reference + timedelta(hours=self.t1_offset_hours)
        elif self._has_offsets():
            reference = _require_utc(now or datetime.now(timezone.utc), "now")
            t0 = reference + timedelta(hours=self.t0_offset_hours)
            t1 = reference + timedelta(hours=self.t1_offset_hours)
        else:
            raise ConfigurationError(
                "Analysis window configuration is missing required values. Provide start/end or offsets."
            )

        if t0 >= t1:
            raise ConfigurationError("Analysis window start (t0) must be earlier than end (t1).")
        return t0, t1

    def block_overrides(self) -> tuple[int, int] | None:
        if self.t0_block is None and self.t1_block is None:
            return None
        if self.t0_block is None or self.t1_block is None:
            raise ConfigurationError("Block overrides need both t0_block and t1_block.")
        if self.t0_block >= self.t1_block:
            raise ConfigurationError("t0_block must be lower than t1_block.")
        return self.t0_block, self.t1_block

    def _has_offsets(self) -> bool:
        return self.t0_offset_hours is not None and self.t1_offset_hours is not None


def build_window_key(t0: datetime, t1: datetime) -> str:
    def _iso(value: datetime) -> str:
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

    return f"{_iso(t0)}|{_iso(t1)}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Blockchain RPC
    infura_api_key: str = ""
    alchemy_api_key: str = ""
    alchemy_rpc_url: str = ""
    etherscan_api_key: str = ""
    etherscan_base_url: str = "https://api.etherscan.io/v2/api"

    # Optional per-chain RPC overrides
    ethereum_rpc_url: str = ""
    arbitrum_rpc_url: str = ""
    base_rpc_url: str = ""

    # Price sources
    coingecko_api_key: str = ""
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    defillama_base_url: str = "https://coins.llama.fi"

    # Analysis window
    window_start_utc: datetime | None = None
    window_end_utc: datetime | None = None
    window_reference_utc: datetime | None = None
    window_t0_offset_hours: float | None = None
    window_t1_offset_hours: float | None = None
    window_t0_block: int | None = None
    window_t1_block: int | None = None

    # Mining windows (default: the analysis window split at its midpoint)
    mine_w1_start: datetime | None = None
    mine_w1_end: datetime | None = None
    mine_w2_start: datetime | None = None
    mine_w2_end: datetime | None = None

    # Thresholds and run shape
    usd_min: float = 30_000.0
    min_transfer_usd: float = 30_000.0
    token_limit: int = 10
    batch_size: int = 100
    max_attempts: int = 3
    rate_limit_backoff_seconds: float = 60.0
    request_timeout_seconds: float = 20.0

    # Data paths
    duckdb_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "whaletrace.duckdb")
    progress_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "progress.json")
    spider_state_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "spider_state.json")
    snapshot_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "live_pnl_results.csv")

    log_level: str = "INFO"

    @field_validator("usd_min")
    @classmethod
    def _positive_usd_min(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"usd_min must be positive, got {value}")
        return value

    def analysis_window(self) -> AnalysisWindowConfig:
        return AnalysisWindowConfig(
            start_utc=self.window_start_utc,
            end_utc=self.window_end_utc,
            reference_utc=self.window_reference_utc,
            t0_offset_hours=self.window_t0_offset_hours,
            t1_offset_hours=self.window_t1_offset_hours,
            t0_block=self.window_t0_block,
            t1_block=self.window_t1_block,
        )

    def mining_windows(self, t0: datetime, t1: datetime) -> tuple[tuple[datetime, datetime], tuple[datetime, datetime]]:
        """Return ((w1_start, w1_end), (w2_start, w2_end))."""
        explicit = (self.mine_w1_start, self.mine_w1_end, self.mine_w2_start, self.mine_w2_end)
        if all(v is not None for v in explicit):
            w1s, w1e, w2s, w2e = (_require_utc(v, "mining window") for v in explicit)
            return (w1s, w1e), (w2s, w2e)
        if any(v is not None for v in explicit):
            raise ConfigurationError("Mining windows need all four bounds (mine_w1_start..mine_w2_end).")
        midpoint = t0 + (t1 - t0) / 2
        return (t0, midpoint), (midpoint, t1)

    def get_rpc_url(self, chain_id: int) -> str:
        """Get RPC URL for a chain, using override, Alchemy, or Infura default."""
        overrides = {
            1: self.ethereum_rpc_url,
            42161: self.arbitrum_rpc_url,
            8453: self.base_rpc_url,
        }
        if overrides.get(chain_id):
            return overrides[chain_id]
        if chain_id == 1 and self.alchemy_rpc_url:
            return self.alchemy_rpc_url
        chain = CHAINS.get(chain_id)
        if chain is not None and self.alchemy_api_key:
            return f"https://{chain.alchemy_slug}.g.alchemy.com/v2/{self.alchemy_api_key}"
        if chain is not None and self.infura_api_key:
            return f"https://{chain.infura_slug}.infura.io/v3/{self.infura_api_key}"
        raise ConfigurationError(f"No RPC URL configured for chain_id={chain_id}")

    def get_alchemy_url(self, chain_id: int = 1) -> str:
        """Alchemy enhanced-API endpoint (token balances, metadata, asset transfers)."""
        if chain_id == 1 and self.alchemy_rpc_url:
            return self.alchemy_rpc_url
        chain = CHAINS.get(chain_id)
        if chain is not None and self.alchemy_api_key:
            return f"https://{chain.alchemy_slug}.g.alchemy.com/v2/{self.alchemy_api_key}"
        raise ConfigurationError(f"No Alchemy endpoint configured for chain_id={chain_id}")


@lru_cache
def get_settings() -> Settings:
    return Settings()
