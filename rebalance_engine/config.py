"""
Configuration management for the rebalance engine.

Settings come from REBAL_-prefixed environment variables (or a local .env).
The venue API key is only ever read from the environment.
"""

from decimal import Decimal
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """Run mode: DEMO uses simulated destinations, LIVE uses the venue gateway."""

    DEMO = "DEMO"
    LIVE = "LIVE"


class AppEnvironment(str, Enum):
    """Deployment environment; development enables uvicorn reload."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Engine settings.

    Secrets are SecretStr so they never render in logs or /config.
    """

    model_config = SettingsConfigDict(
        env_prefix="REBAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    mode: RunMode = Field(
        default=RunMode.DEMO,
        description="Run mode: DEMO (simulated venues) or LIVE (venue gateway)",
    )
    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Deployment environment",
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8780, ge=1024, le=65535, description="Server port")

    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for ledger, records and breaker state",
    )

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # Identities
    admin_address: str = Field(
        default="admin",
        description="Address allowed to vet destinations in the protocol registry",
    )
    agent_address: str = Field(
        default="agent",
        description="Delegate address this orchestrator submits moves as",
    )
    registered_destinations: list[str] = Field(
        default_factory=list,
        description="Destinations registered at startup by the administrator",
    )
    demo_rates: dict[str, Decimal] = Field(
        default_factory=dict,
        description="DEMO mode: simulated annualized rate (%) per registered destination",
    )
    preferences_file: Path | None = Field(
        default=None,
        description="JSON file of per-account preferences (defaults to {data_dir}/preferences.json)",
    )

    # Scheduling
    cycle_interval_s: int = Field(
        default=4 * 3600,
        description="Seconds between scheduled rebalance cycles",
        ge=10,
        le=7 * 24 * 3600,
    )
    max_workers: int = Field(
        default=8,
        description="Maximum accounts processed concurrently",
        ge=1,
        le=256,
    )

    # Quote fetching and submission
    quote_timeout_s: float = Field(
        default=5.0,
        description="Per-destination quote fetch timeout",
        gt=0,
        le=60,
    )
    submit_timeout_s: float = Field(
        default=30.0,
        description="Timeout for a single rebalance submission",
        gt=0,
        le=600,
    )
    max_submit_attempts: int = Field(
        default=4,
        description="Submission attempts before a transient failure is final",
        ge=1,
        le=10,
    )
    backoff_base_s: float = Field(
        default=1.0,
        description="Base delay for exponential retry backoff",
        ge=0,
        le=60,
    )
    backoff_max_s: float = Field(
        default=30.0,
        description="Upper bound on a single retry delay",
        ge=0,
        le=600,
    )

    # Circuit breaker
    failure_rate_threshold: float = Field(
        default=0.5,
        description="Failure fraction within the window that trips the breaker",
        gt=0,
        le=1,
    )
    failure_window_s: int = Field(
        default=3600,
        description="Rolling window for failure-rate evaluation",
        ge=1,
    )
    failure_min_samples: int = Field(
        default=4,
        description="Minimum outcomes in window before the breaker can trip",
        ge=1,
    )

    # Mirror and recovery
    mirror_resync_interval_s: int = Field(
        default=300,
        description="Seconds between full mirror re-reads from the ledger",
        ge=1,
        le=86400,
    )
    feed_retention: int = Field(
        default=10000,
        description="Ledger change events retained for feed resume",
        ge=10,
    )
    move_proof_retention: int = Field(
        default=256,
        description="Applied move proofs kept per account for replay and recovery",
        ge=1,
    )
    record_timeout_s: int = Field(
        default=900,
        description="Age after which an unresolved submission is considered abandoned",
        ge=1,
    )

    # Decision safety filters
    min_liquidity: Decimal = Field(
        default=Decimal("100000"),
        description="Quotes with lower available liquidity are discarded",
        ge=0,
    )
    max_utilization: Decimal = Field(
        default=Decimal("0.95"),
        description="Quotes with higher utilization are discarded",
        gt=0,
        le=1,
    )
    conservative_rate_ceiling: Decimal = Field(default=Decimal("12"), gt=0)
    moderate_rate_ceiling: Decimal = Field(default=Decimal("25"), gt=0)
    aggressive_rate_ceiling: Decimal = Field(default=Decimal("60"), gt=0)

    # Move cost model
    move_fixed_cost: Decimal = Field(
        default=Decimal("30"),
        description="Flat cost of one move in base asset units",
        ge=0,
    )
    move_proportional_bps: Decimal = Field(
        default=Decimal("0"),
        description="Cost of one move in basis points of the amount",
        ge=0,
    )
    cost_amortization_days: int = Field(
        default=365,
        description="Horizon over which one move's cost is annualized",
        ge=1,
    )

    # Venue gateway (LIVE mode)
    venue_base_url: str = Field(
        default="http://127.0.0.1:9000",
        description="Base URL of the destination venue gateway",
    )
    venue_api_key: SecretStr | None = Field(
        default=None,
        description="API key for the venue gateway",
    )
    venue_request_timeout: float = Field(default=10.0, gt=0, le=120)
    venue_max_retries: int = Field(default=3, ge=0, le=10)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Create the data directory and store it as an absolute path."""
        v.mkdir(parents=True, exist_ok=True)
        return v.resolve()

    @property
    def is_demo(self) -> bool:
        """Check if running with simulated destinations."""
        return self.mode == RunMode.DEMO

    @property
    def ledger_dir(self) -> Path:
        return self.data_dir / "ledger"

    @property
    def orchestrator_dir(self) -> Path:
        return self.data_dir / "orchestrator"

    def get_redacted_config(self) -> dict[str, str | int | bool]:
        """Non-secret settings for /config and the startup log."""
        return {
            "mode": self.mode.value,
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "agent_address": self.agent_address,
            "cycle_interval_s": self.cycle_interval_s,
            "venue_configured": self.venue_api_key is not None,
        }


@lru_cache
def get_settings() -> Settings:
    """Settings are read once per process; tests call get_settings.cache_clear()."""
    return Settings()


def get_settings_dep() -> Settings:
    """FastAPI dependency wrapper around get_settings."""
    return get_settings()
