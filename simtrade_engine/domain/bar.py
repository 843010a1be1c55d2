"""
Bar (OHLCV) domain model.

Represents a single price bar with open, high, low, close, and volume, plus the
bar intervals and strategy time horizons used to pick and annualize them.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

TRADING_DAYS_PER_YEAR = 252
TRADING_MINUTES_PER_DAY = 390


class BarInterval(str, Enum):
    """Supported bar intervals for historical data."""

    M1 = "1min"
    M5 = "5min"
    M15 = "15min"
    M30 = "30min"
    H1 = "60min"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def minutes(self) -> int:
        """Return interval length in trading minutes."""
        mapping = {
            "1min": 1,
            "5min": 5,
            "15min": 15,
            "30min": 30,
            "60min": 60,
            "daily": TRADING_MINUTES_PER_DAY,
            "weekly": TRADING_MINUTES_PER_DAY * 5,
        }
        return mapping[self.value]

    @property
    def periods_per_year(self) -> int:
        """Number of bars in a trading year, used to annualize ratios."""
        if self is BarInterval.WEEKLY:
            return 52
        return TRADING_DAYS_PER_YEAR * TRADING_MINUTES_PER_DAY // self.minutes


class TimeHorizon(str, Enum):
    """Strategy holding horizon."""

    SHORT_TERM = "SHORT_TERM"
    SWING = "SWING"
    LONG_TERM = "LONG_TERM"

    @property
    def default_interval(self) -> BarInterval:
        """Bar interval a strategy of this horizon is replayed on."""
        mapping = {
            "SHORT_TERM": BarInterval.M15,
            "SWING": BarInterval.DAILY,
            "LONG_TERM": BarInterval.DAILY,
        }
        return mapping[self.value]


class Bar(BaseModel):
    """
    A single OHLCV bar.

    Immutable to ensure deterministic backtesting.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Instrument symbol")
    timestamp: datetime = Field(..., description="Bar timestamp")

    open: float = Field(..., description="Opening price", gt=0)
    high: float = Field(..., description="Highest price", gt=0)
    low: float = Field(..., description="Lowest price", gt=0)
    close: float = Field(..., description="Closing price", gt=0)
    volume: float = Field(default=0.0, description="Trading volume", ge=0)

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)

    @field_validator("high")
    @classmethod
    def high_gte_open(cls, v: float, info: ValidationInfo) -> float:
        """Validate high >= open."""
        if "open" in info.data and v < info.data["open"]:
            raise ValueError("high must be >= open")
        return v

    @field_validator("low")
    @classmethod
    def low_lte_open_high(cls, v: float, info: ValidationInfo) -> float:
        """Validate low <= open and low <= high."""
        data = info.data
        if "open" in data and v > data["open"]:
            raise ValueError("low must be <= open")
        if "high" in data and v > data["high"]:
            raise ValueError("low must be <= high")
        return v

    @field_validator("close")
    @classmethod
    def close_within_range(cls, v: float, info: ValidationInfo) -> float:
        """Validate low <= close <= high."""
        data = info.data
        if "high" in data and v > data["high"]:
            raise ValueError("close must be <= high")
        if "low" in data and v < data["low"]:
            raise ValueError("close must be >= low")
        return v

    @property
    def typical(self) -> float:
        """Calculate typical price (HLC average)."""
        return (self.high + self.low + self.close) / 3

    def __hash__(self) -> int:
        return hash((self.symbol, self.timestamp))
