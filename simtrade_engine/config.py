"""
Configuration management for the SimTrade backtest engine.

Uses pydantic-settings for type-safe environment variable handling.
Every field can be overridden with a SIMTRADE_-prefixed environment variable
or a local .env file.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SIMTRADE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Application environment",
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8765, ge=1024, le=65535, description="Server port")

    # Data paths
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for bars, strategies and run artefacts",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON-shaped log lines")

    # Run execution
    max_concurrent_runs: int = Field(
        default=8,
        ge=1,
        le=256,
        description="Maximum backtests executing at the same time",
    )
    progress_every_n_bars: int = Field(
        default=10,
        ge=1,
        description="Emit progress and equity_update events every N bars",
    )
    equity_flush_every_n_bars: int = Field(
        default=50,
        ge=1,
        description="Persist buffered equity points every N bars",
    )
    indicator_lookback_bars: int = Field(
        default=500,
        ge=50,
        le=100_000,
        description="Bars of history handed to indicator calculations",
    )
    risk_free_rate: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Annual risk-free rate used by Sharpe and Sortino",
    )

    # Event streaming
    event_queue_size: int = Field(
        default=1000,
        ge=10,
        le=1_000_000,
        description="Per-subscriber event queue capacity",
    )
    stream_heartbeat_s: float = Field(
        default=15.0,
        gt=0,
        le=300,
        description="Idle interval before an SSE heartbeat comment is sent",
    )
    stream_close_delay_s: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Delay between a terminal event and closing the SSE stream",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Ensure data directory exists."""
        v.mkdir(parents=True, exist_ok=True)
        return v.resolve()

    @property
    def bars_dir(self) -> Path:
        return self.data_dir / "bars"

    @property
    def strategies_dir(self) -> Path:
        return self.data_dir / "strategies"

    @property
    def runs_dir(self) -> Path:
        return self.data_dir / "runs"

    def get_public_config(self) -> dict[str, str | int | float | bool]:
        """
        Get configuration dict safe for logging and API responses.
        """
        return {
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "max_concurrent_runs": self.max_concurrent_runs,
            "progress_every_n_bars": self.progress_every_n_bars,
            "equity_flush_every_n_bars": self.equity_flush_every_n_bars,
            "event_queue_size": self.event_queue_size,
            "stream_heartbeat_s": self.stream_heartbeat_s,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout application.
    """
    return Settings()


def get_settings_dep() -> Settings:
    """
    Dependency for FastAPI routes to get settings.
    Allows for easy dependency override in tests.
    """
    return get_settings()
