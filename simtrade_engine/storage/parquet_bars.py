"""
Parquet-backed bar storage.

Layout:
{data_dir}/bars/{SYMBOL}/{interval}.parquet

Columns: timestamp, open, high, low, close, volume
"""

import asyncio
from datetime import datetime
from pathlib import Path

import pandas as pd

from simtrade_engine.backtest.errors import DataLoadError
from simtrade_engine.domain.bar import Bar, BarInterval
from simtrade_engine.interfaces.data_provider import BarProvider
from simtrade_engine.logging import get_logger

logger = get_logger(__name__)

BAR_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


class ParquetBarProvider(BarProvider):
    """
    Reads bars from per-symbol parquet files.
    """

    def __init__(self, bars_dir: Path) -> None:
        self.bars_dir = bars_dir

    def path_for(self, symbol: str, interval: BarInterval) -> Path:
        return self.bars_dir / symbol.upper() / f"{interval.value}.parquet"

    async def load_bars(
        self,
        symbol: str,
        interval: BarInterval,
        start: datetime,
        end: datetime,
    ) -> list[Bar]:
        return await asyncio.to_thread(self._read, symbol, interval, start, end)

    def _read(
        self,
        symbol: str,
        interval: BarInterval,
        start: datetime,
        end: datetime,
    ) -> list[Bar]:
        path = self.path_for(symbol, interval)
        if not path.exists():
            logger.warning("No bar file for %s/%s at %s", symbol, interval.value, path)
            return []

        try:
            df = pd.read_parquet(path, columns=BAR_COLUMNS)
        except (OSError, ValueError) as e:
            raise DataLoadError(f"Cannot read bars from {path}: {e}") from e

        timestamps = pd.to_datetime(df["timestamp"], utc=True)
        mask = (timestamps >= _as_utc(start)) & (timestamps <= _as_utc(end))
        df = df.loc[mask].assign(timestamp=timestamps[mask]).sort_values("timestamp")
        df = df.drop_duplicates(subset="timestamp", keep="last")

        bars = [
            Bar(
                symbol=symbol.upper(),
                timestamp=row.timestamp.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume) if pd.notna(row.volume) else 0.0,
            )
            for row in df.itertuples(index=False)
        ]
        logger.debug("Loaded %d bars for %s/%s", len(bars), symbol, interval.value)
        return bars


def write_bars(bars_dir: Path, symbol: str, interval: BarInterval, bars: list[Bar]) -> Path:
    """
    Write bars to the provider layout, replacing any existing file.

    Returns:
        Path of the written parquet file.
    """
    path = bars_dir / symbol.upper() / f"{interval.value}.parquet"
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(
        [
            {
                "timestamp": b.timestamp,
                "open": b.open,
                "high": b.high,
                "low": b.low,
                "close": b.close,
                "volume": b.volume,
            }
            for b in bars
        ],
        columns=BAR_COLUMNS,
    )
    df.to_parquet(path, index=False)
    return path


def _as_utc(ts: datetime) -> pd.Timestamp:
    """Naive datetimes are taken to be UTC."""
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        return stamp.tz_localize("UTC")
    return stamp.tz_convert("UTC")
