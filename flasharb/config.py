"""Runtime configuration for the arbitrage pipeline.

Values come from the environment or a ``.env`` file. Live credentials are
optional at construction time so components can be built in tests and dry
runs; ``ensure_ready`` is the startup gate for live operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flasharb.core.errors import ConfigurationError

USDC_ADDRESS = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

DEFAULT_RELAYS: dict[str, str] = {
    "flashbots": "https://rpc.flashbots.net",
    "eden": "https://api.edennetwork.io/v1/rpc",
    "bloxroute": "https://mev.api.blxrbdn.com",
}


@dataclass(frozen=True)
class ProfitProfile:
    """Thresholds the decision gate applies to a scanned opportunity."""

    min_profit_percent_stable: float
    min_profit_usd: float
    gas_cost_multiplier: float


class ArbSettings(BaseSettings):
    """Typed configuration for scanning and submission."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Network
    rpc_url: str | None = Field(default=None, alias="MAINNET_RPC")
    chain_id: int = Field(default=1, alias="CHAIN_ID")
    block_time_seconds: float = 12.0
    block_poll_interval: float = 2.0

    # Signer and settlement contract
    private_key: SecretStr | None = Field(default=None, alias="PRIVATE_KEY")
    settlement_address: str | None = Field(default=None, alias="SETTLEMENT_CONTRACT")

    # Quote service
    zx_api_key: SecretStr | None = Field(default=None, alias="ZX_API_KEY")
    zx_base_url: str = "https://api.0x.org"
    quote_timeout_seconds: float = 5.0
    max_slippage_percent: float = 1.0
    inter_call_delay_seconds: float = 0.4
    usd_reference_token: str = USDC_ADDRESS

    # Gas
    gas_limit: int = 400_000
    withdraw_gas_limit: int = 100_000
    max_gas_price_gwei: float = Field(default=25.0, alias="MAX_GAS_PRICE_GWEI")
    floor_gas_price_gwei: float = 5.0
    priority_fee_gwei: float = 1.5
    dynamic_ceiling: bool = True
    ceiling_blocks: int = 10
    ceiling_multiplier: float = 1.5
    gas_cost_multiplier: float = 2.0

    # Profit thresholds (percent)
    min_profit_percent_stable: float = 0.2
    min_profit_percent_volatile: float = 1.5
    min_profit_percent_triangular: float = 0.1
    min_profit_percent_alternative: float = 0.08
    min_profit_percent_large_amount: float = 0.1
    min_price_impact_percent: float = 0.5
    min_profit_usd: float = 100.0

    # Round trips re-sized from these USD notionals every cycle
    large_amount_usd_sizes: list[float] = Field(
        default_factory=lambda: [5_000.0, 10_000.0, 25_000.0]
    )

    # Execution
    enable_execution: bool = Field(default=False, alias="ENABLE_EXECUTION")
    check_interval_blocks: int = 3

    # Private relays
    relays: dict[str, str] = Field(default_factory=lambda: DEFAULT_RELAYS.copy())
    enabled_relays: list[str] = Field(default_factory=lambda: ["flashbots", "eden"])
    enable_simulation: bool = True
    grace_blocks: int = 3
    relay_timeout_seconds: float = 10.0
    public_fallback: bool = True
    atomic_withdrawal: bool = True
    preflight_checks: bool = True
    retry_attempts: int = 3
    retry_base_delay: float = 0.25

    # Cache
    redis_enabled: bool = Field(default=False, alias="REDIS_ENABLED")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    cache_ttl_seconds: float = 30.0
    quote_cache_ttl_seconds: float = 2.0
    cache_prefix: str = "flash_arb:"
    memory_cache_max_entries: int = 1000
    cache_sweep_interval_seconds: float = 60.0

    @field_validator("rpc_url", "settlement_address", mode="before")
    @classmethod
    def strip_whitespace(cls, v: str | None) -> str | None:
        """Strip whitespace from values commonly pasted into .env files."""
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("ceiling_blocks")
    @classmethod
    def _positive_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("ceiling_blocks must be positive")
        return v

    @model_validator(mode="after")
    def _floor_below_max(self) -> ArbSettings:
        if self.floor_gas_price_gwei > self.max_gas_price_gwei:
            raise ValueError(
                f"floor_gas_price_gwei ({self.floor_gas_price_gwei}) exceeds "
                f"MAX_GAS_PRICE_GWEI ({self.max_gas_price_gwei})"
            )
        return self

    @property
    def fee_window(self) -> int:
        """Number of blocks in the fee history window (never below 20)."""
        return max(self.ceiling_blocks, 20)

    @property
    def is_fork(self) -> bool:
        """True when the RPC endpoint is a local fork."""
        if not self.rpc_url:
            return False
        host = urlparse(self.rpc_url).hostname or ""
        return host in {"localhost", "127.0.0.1"}

    @property
    def relay_urls(self) -> dict[str, str]:
        """Enabled relays that have a configured URL, in configured order."""
        return {
            name: self.relays[name]
            for name in self.enabled_relays
            if name in self.relays
        }

    def profit_profile(self) -> ProfitProfile:
        """Thresholds for the current network; forks use a looser profile."""
        if self.is_fork:
            return ProfitProfile(
                min_profit_percent_stable=0.1,
                min_profit_usd=1.0,
                gas_cost_multiplier=1.5,
            )
        return ProfitProfile(
            min_profit_percent_stable=self.min_profit_percent_stable,
            min_profit_usd=self.min_profit_usd,
            gas_cost_multiplier=self.gas_cost_multiplier,
        )

    def missing_required(self) -> list[str]:
        """Names of required live settings that are unset."""
        missing = []
        if not self.rpc_url:
            missing.append("MAINNET_RPC")
        if self.zx_api_key is None or not self.zx_api_key.get_secret_value():
            missing.append("ZX_API_KEY")
        if self.private_key is None or not self.private_key.get_secret_value():
            missing.append("PRIVATE_KEY")
        if not self.settlement_address:
            missing.append("SETTLEMENT_CONTRACT")
        return missing

    def ensure_ready(self) -> None:
        """Raise ConfigurationError listing every missing live setting."""
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(missing)
