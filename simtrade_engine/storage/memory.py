"""
In-memory collaborators.

Used by tests and by embedders that don't need durable storage. Records are
copied on the way in and out so callers can never mutate stored state.
"""

import asyncio
from collections import defaultdict
from datetime import datetime

from simtrade_engine.backtest.errors import PersistenceError, RunStateError
from simtrade_engine.backtest.models import (
    Alert,
    BacktestRun,
    EquityPoint,
    RunStatus,
    Trade,
    TradeSide,
)
from simtrade_engine.domain.bar import Bar, BarInterval
from simtrade_engine.interfaces.data_provider import BarProvider
from simtrade_engine.interfaces.persistence import BacktestStore, StrategyStore
from simtrade_engine.strategies.evaluator import StrategyDefinition


class InMemoryBarProvider(BarProvider):
    """Serves bars registered per (symbol, interval)."""

    def __init__(self) -> None:
        self._bars: dict[tuple[str, BarInterval], list[Bar]] = {}

    def add_bars(self, symbol: str, interval: BarInterval, bars: list[Bar]) -> None:
        key = (symbol.upper(), interval)
        merged = {b.timestamp: b for b in self._bars.get(key, [])}
        merged.update({b.timestamp: b for b in bars})
        self._bars[key] = [merged[ts] for ts in sorted(merged)]

    async def load_bars(
        self,
        symbol: str,
        interval: BarInterval,
        start: datetime,
        end: datetime,
    ) -> list[Bar]:
        bars = self._bars.get((symbol.upper(), interval), [])
        return [b for b in bars if start <= b.timestamp <= end]


class InMemoryStrategyStore(StrategyStore):
    """Dictionary-backed strategy store."""

    def __init__(self, strategies: list[StrategyDefinition] | None = None) -> None:
        self._strategies = {s.id: s for s in strategies or []}

    def add(self, strategy: StrategyDefinition) -> None:
        self._strategies[strategy.id] = strategy

    async def get_strategy(self, strategy_id: str) -> StrategyDefinition | None:
        return self._strategies.get(strategy_id)


class InMemoryBacktestStore(BacktestStore):
    """Dictionary-backed run store."""

    def __init__(self) -> None:
        self._runs: dict[str, BacktestRun] = {}
        self._trades: dict[str, list[Trade]] = defaultdict(list)
        self._equity: dict[str, list[EquityPoint]] = defaultdict(list)
        self._alerts: dict[str, list[Alert]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def create_run(self, run: BacktestRun) -> None:
        async with self._lock:
            if run.id in self._runs:
                raise PersistenceError(f"Run {run.id} already exists")
            self._runs[run.id] = run.model_copy(deep=True)

    async def update_run(self, run: BacktestRun) -> None:
        async with self._lock:
            stored = self._runs.get(run.id)
            if stored is None:
                raise PersistenceError(f"Run {run.id} does not exist")
            if stored.is_terminal:
                raise RunStateError(f"Run {run.id} is {stored.status.value} and cannot change")
            self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> BacktestRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        strategy_id: str | None = None,
        symbol: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[BacktestRun]:
        runs = [
            r
            for r in self._runs.values()
            if (strategy_id is None or r.config.strategy_id == strategy_id)
            and (symbol is None or r.config.symbol == symbol)
            and (status is None or r.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def append_trades(self, run_id: str, trades: list[Trade]) -> None:
        async with self._lock:
            existing = self._trades[run_id]
            last = existing[-1].execution_bar if existing else None
            for trade in trades:
                if last is not None and trade.execution_bar < last:
                    raise PersistenceError(
                        f"Out-of-order trade for run {run_id}: {trade.execution_bar} < {last}"
                    )
                last = trade.execution_bar
            existing.extend(t.model_copy() for t in trades)

    async def append_equity_points(self, run_id: str, points: list[EquityPoint]) -> None:
        async with self._lock:
            self._equity[run_id].extend(p.model_copy() for p in points)

    async def append_alerts(self, run_id: str, alerts: list[Alert]) -> None:
        async with self._lock:
            self._alerts[run_id].extend(a.model_copy() for a in alerts)

    async def list_trades(
        self,
        run_id: str,
        side: TradeSide | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Trade], int]:
        trades = [t for t in self._trades.get(run_id, []) if side is None or t.side == side]
        return [t.model_copy() for t in trades[offset : offset + limit]], len(trades)

    async def list_equity_points(self, run_id: str) -> list[EquityPoint]:
        return [p.model_copy() for p in self._equity.get(run_id, [])]

    async def list_alerts(self, run_id: str) -> list[Alert]:
        return [a.model_copy() for a in self._alerts.get(run_id, [])]
