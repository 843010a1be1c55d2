"""
Equity curve resampling for the query surface.
"""

from enum import Enum

import pandas as pd

from simtrade_engine.backtest.models import EquityPoint


class EquityResolution(str, Enum):
    """Equity curve resolutions served by the API."""

    FULL = "full"
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def pandas_freq(self) -> str | None:
        mapping = {"full": None, "hourly": "1h", "daily": "1D"}
        return mapping[self.value]


def downsample_equity(
    points: list[EquityPoint],
    resolution: EquityResolution,
) -> list[EquityPoint]:
    """
    Keep the last equity point of every hour or day.

    Points are returned unchanged, so each one still satisfies the equity
    invariants. FULL returns the input as-is.
    """
    freq = resolution.pandas_freq
    if freq is None or not points:
        return points

    index = pd.DatetimeIndex([p.timestamp for p in points])
    positions = pd.Series(range(len(points)), index=index)
    last_per_bucket = positions.resample(freq).last().dropna().astype(int)
    return [points[i] for i in last_per_bucket.tolist()]
