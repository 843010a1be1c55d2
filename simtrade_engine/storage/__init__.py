"""
Store and bar provider implementations.

- In-memory stores for tests and embedding
- File-backed run and strategy stores
- Parquet bar provider
"""

from simtrade_engine.storage.files import FileBacktestStore, JsonStrategyStore
from simtrade_engine.storage.memory import (
    InMemoryBacktestStore,
    InMemoryBarProvider,
    InMemoryStrategyStore,
)
from simtrade_engine.storage.parquet_bars import ParquetBarProvider

__all__ = [
    "FileBacktestStore",
    "InMemoryBacktestStore",
    "InMemoryBarProvider",
    "InMemoryStrategyStore",
    "JsonStrategyStore",
    "ParquetBarProvider",
]
