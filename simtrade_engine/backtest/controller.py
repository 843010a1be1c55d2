"""
Backtest controller.

Owns the lifecycle of backtest runs:
- validates a config and creates the run record synchronously
- executes each run in its own asyncio task
- drives the VirtualPortfolioEngine bar by bar with causal history only
- persists fills, alerts and equity points from the run's task only
- publishes lifecycle and progress events on the injected EventBus

Status flow: PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from simtrade_engine.backtest.alerts import check_performance_alerts
from simtrade_engine.backtest.errors import (
    BacktestConfigError,
    DataLoadError,
    SignalEvaluationError,
    UnknownStrategyError,
)
from simtrade_engine.backtest.metrics import compute_metrics
from simtrade_engine.backtest.models import (
    Alert,
    AlertSeverity,
    AlertType,
    BacktestConfig,
    BacktestRun,
    EquityPoint,
    RunStatus,
    Signal,
    Trade,
)
from simtrade_engine.backtest.portfolio import VirtualPortfolioEngine
from simtrade_engine.config import Settings, get_settings
from simtrade_engine.domain.bar import Bar
from simtrade_engine.interfaces.data_provider import BarProvider
from simtrade_engine.interfaces.persistence import BacktestStore, StrategyStore
from simtrade_engine.interfaces.strategy import StrategyEvaluator
from simtrade_engine.logging import clear_run_id, get_logger, set_run_id
from simtrade_engine.runtime.event_bus import BacktestEventType, Event, EventBus
from simtrade_engine.runtime.run_context import generate_run_id
from simtrade_engine.strategies.evaluator import RuleStrategyEvaluator, StrategyDefinition

logger = get_logger(__name__)

EvaluatorFactory = Callable[[StrategyDefinition], StrategyEvaluator]


class _RunCancelled(Exception):
    """Raised inside a run task when its cancel flag is seen."""


class BacktestController:
    """
    Starts, tracks and cancels backtest runs.

    Collaborators are injected so the controller can run against in-memory
    stores in tests and file-backed stores in the service.
    """

    def __init__(
        self,
        store: BacktestStore,
        bar_provider: BarProvider,
        strategy_store: StrategyStore,
        event_bus: EventBus,
        settings: Settings | None = None,
        evaluator_factory: EvaluatorFactory | None = None,
    ) -> None:
        self._store = store
        self._bars = bar_provider
        self._strategies = strategy_store
        self._bus = event_bus
        self._settings = settings or get_settings()
        self._evaluator_factory = evaluator_factory or self._default_evaluator

        self._tasks: dict[str, asyncio.Task[BacktestRun]] = {}
        self._cancel_flags: dict[str, asyncio.Event] = {}
        self._runs: dict[str, BacktestRun] = {}

    def _default_evaluator(self, strategy: StrategyDefinition) -> StrategyEvaluator:
        return RuleStrategyEvaluator(strategy, lookback_bars=self._settings.indicator_lookback_bars)

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(self, config: BacktestConfig) -> str:
        """
        Validate a config, create a PENDING run and schedule it.

        Returns:
            The new run id; execution continues in the background.

        Raises:
            BacktestConfigError: Invalid date range or too many active runs
            UnknownStrategyError: The strategy does not exist
        """
        if config.start_date >= config.end_date:
            raise BacktestConfigError(
                f"start_date {config.start_date.isoformat()} must be before "
                f"end_date {config.end_date.isoformat()}"
            )
        if len(self.active_runs()) >= self._settings.max_concurrent_runs:
            raise BacktestConfigError(
                f"Too many active backtests (max {self._settings.max_concurrent_runs})"
            )

        # Strategy lookup is the last synchronous check
        strategy = await self._strategies.get_strategy(config.strategy_id)
        if strategy is None:
            raise UnknownStrategyError(config.strategy_id)

        # Create PENDING record and schedule the run task
        run = BacktestRun(id=generate_run_id("backtest"), config=config)
        await self._store.create_run(run)
        self._runs[run.id] = run
        self._cancel_flags[run.id] = asyncio.Event()
        self._tasks[run.id] = asyncio.create_task(
            self._execute(run, strategy), name=f"backtest:{run.id}"
        )

        logger.info(
            "Backtest %s scheduled: %s %s %s -> %s",
            run.id,
            config.strategy_id,
            config.symbol,
            config.start_date.date(),
            config.end_date.date(),
        )
        return run.id

    async def cancel(self, run_id: str) -> bool:
        """
        Request cancellation. The run stops before its next bar.

        Returns:
            True if the run was active and has been signalled
        """
        # Only runs with a live task can be cancelled
        flag = self._cancel_flags.get(run_id)
        task = self._tasks.get(run_id)
        if flag is None or task is None or task.done():
            return False
        flag.set()
        logger.info("Cancellation requested for %s", run_id)
        return True

    async def wait(self, run_id: str) -> BacktestRun:
        """Wait for a run task to finish and return its final record."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        run = self.get_run(run_id)
        if run is None:
            raise KeyError(run_id)
        return run

    def get_run(self, run_id: str) -> BacktestRun | None:
        """Last known state of a run started by this controller."""
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def active_runs(self) -> list[str]:
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel every active run and wait for their tasks."""
        active = [self._tasks[run_id] for run_id in self.active_runs()]
        for run_id in self.active_runs():
            self._cancel_flags[run_id].set()
        if active:
            await asyncio.gather(*active, return_exceptions=True)

    # =========================================================================
    # Run execution
    # =========================================================================

    async def _execute(self, run: BacktestRun, strategy: StrategyDefinition) -> BacktestRun:
        set_run_id(run.id)
        started = time.monotonic()
        engine = VirtualPortfolioEngine(run.id, run.config, strategy.risk_limits)
        pending_points: list[EquityPoint] = []

        try:
            await self._transition(run, RunStatus.RUNNING)
            await self._publish(
                run.id,
                BacktestEventType.STARTED,
                {
                    "run_id": run.id,
                    "strategy_id": run.config.strategy_id,
                    "symbol": run.config.symbol,
                    "interval": run.config.bar_interval.value,
                    "start_date": run.config.start_date.isoformat(),
                    "end_date": run.config.end_date.isoformat(),
                },
            )

            # Load bars
            bars = await self._load_bars(run)
            run.total_bars = len(bars)
            evaluator = self._evaluator_factory(strategy)

            # Replay bar by bar
            await self._replay(run, bars, engine, evaluator, pending_points)
            await self._flush_points(run.id, pending_points)

            # Close any open position at the last bar
            if bars and engine.has_position:
                trade = engine.liquidate(bars[-1])
                if trade is not None:
                    await self._record_trades(run.id, [trade])

            # Metrics and performance alerts
            run.metrics = compute_metrics(
                engine.trades,
                engine.equity_curve,
                run.config.initial_cash,
                final_cash=engine.cash,
                final_equity=engine.cash if engine.position is None else engine.total_equity,
                periods_per_year=run.config.bar_interval.periods_per_year,
                risk_free_rate=self._settings.risk_free_rate,
            )
            performance_alerts = check_performance_alerts(run.id, run.metrics)
            if performance_alerts:
                await self._store.append_alerts(run.id, performance_alerts)

            # Persist COMPLETED before announcing it
            run.execution_time_s = time.monotonic() - started
            await self._transition(run, RunStatus.COMPLETED)
            await self._finalize(run.id)
            await self._publish(
                run.id, BacktestEventType.COMPLETED, run.model_dump(mode="json")
            )
            logger.info(
                "Backtest %s completed: %d bars, %d trades, return %.2f (%.2fs)",
                run.id,
                run.bars_processed,
                run.metrics.total_trades,
                run.metrics.total_return,
                run.execution_time_s,
            )

        except (_RunCancelled, asyncio.CancelledError) as e:
            await self._flush_points_quietly(run.id, pending_points)
            run.execution_time_s = time.monotonic() - started
            await self._settle(run, RunStatus.CANCELLED, None)
            await self._publish(
                run.id,
                BacktestEventType.CANCELLED,
                {"run_id": run.id, "bars_processed": run.bars_processed},
            )
            logger.info("Backtest %s cancelled after %d bars", run.id, run.bars_processed)
            if isinstance(e, asyncio.CancelledError):
                raise

        except Exception as e:
            logger.exception("Backtest %s failed", run.id)
            await self._flush_points_quietly(run.id, pending_points)
            run.execution_time_s = time.monotonic() - started
            await self._settle(run, RunStatus.FAILED, str(e) or type(e).__name__)
            await self._publish(
                run.id,
                BacktestEventType.FAILED,
                {"run_id": run.id, "error": run.error, "bars_processed": run.bars_processed},
            )

        finally:
            self._cancel_flags.pop(run.id, None)
            clear_run_id()

        return run

    async def _load_bars(self, run: BacktestRun) -> list[Bar]:
        config = run.config
        try:
            bars = await self._bars.load_bars(
                config.symbol, config.bar_interval, config.start_date, config.end_date
            )
        except DataLoadError:
            raise
        except Exception as e:
            raise DataLoadError(f"Failed to load bars for {config.symbol}: {e}") from e

        bars = sorted(bars, key=lambda b: b.timestamp)
        for prev, curr in zip(bars, bars[1:]):
            if curr.timestamp == prev.timestamp:
                raise DataLoadError(
                    f"Duplicate bar timestamp {curr.timestamp.isoformat()} for {config.symbol}"
                )
        logger.info("Loaded %d bars for %s/%s", len(bars), config.symbol, config.bar_interval.value)
        return bars

    async def _replay(
        self,
        run: BacktestRun,
        bars: list[Bar],
        engine: VirtualPortfolioEngine,
        evaluator: StrategyEvaluator,
        pending_points: list[EquityPoint],
    ) -> None:
        cancel_flag = self._cancel_flags[run.id]
        progress_every = self._settings.progress_every_n_bars
        flush_every = self._settings.equity_flush_every_n_bars
        total = len(bars)
        history: list[Bar] = []

        for index, bar in enumerate(bars):
            if cancel_flag.is_set():
                raise _RunCancelled()

            # Evaluator only ever sees bars up to and including the current one
            history.append(bar)
            try:
                signal = await evaluator.evaluate(history, engine.has_position)
            except SignalEvaluationError as e:
                logger.warning("Signal evaluation failed at %s: %s", bar.timestamp, e)
                signal = Signal.HOLD
                await self._store.append_alerts(
                    run.id,
                    [
                        Alert(
                            run_id=run.id,
                            alert_type=AlertType.SIGNAL_ERROR,
                            severity=AlertSeverity.HIGH,
                            message=str(e),
                            timestamp=bar.timestamp,
                        )
                    ],
                )

            result = engine.step(bar, signal)
            run.bars_processed = index + 1

            # Trades are written immediately, equity points in batches
            if result.trades:
                await self._record_trades(run.id, result.trades)
            if result.alerts:
                await self._store.append_alerts(run.id, result.alerts)

            pending_points.append(result.equity_point)
            if len(pending_points) >= flush_every:
                await self._flush_points(run.id, pending_points)

            is_last = index + 1 == total
            if run.bars_processed % progress_every == 0 or is_last:
                await self._publish_progress(run, result.equity_point)
                # Let subscribers and other runs make progress
                await asyncio.sleep(0)

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    async def _record_trades(self, run_id: str, trades: list[Trade]) -> None:
        await self._store.append_trades(run_id, trades)
        for trade in trades:
            await self._publish(
                run_id, BacktestEventType.TRADE_EXECUTED, trade.model_dump(mode="json")
            )

    async def _flush_points(self, run_id: str, pending_points: list[EquityPoint]) -> None:
        if not pending_points:
            return
        await self._store.append_equity_points(run_id, list(pending_points))
        pending_points.clear()

    async def _flush_points_quietly(self, run_id: str, pending_points: list[EquityPoint]) -> None:
        try:
            await self._flush_points(run_id, pending_points)
        except Exception:
            logger.exception("Could not persist %d buffered equity points", len(pending_points))

    async def _transition(self, run: BacktestRun, status: RunStatus) -> None:
        updated = run.model_copy(deep=True)
        previous = updated.transition_to(status)
        await self._store.update_run(updated)

        # Adopt the new state only once the store has accepted it
        for name in BacktestRun.model_fields:
            setattr(run, name, getattr(updated, name))
        self._runs[run.id] = run
        await self._publish(
            run.id,
            BacktestEventType.STATUS_CHANGED,
            {"run_id": run.id, "old_status": previous.value, "new_status": status.value},
        )

    async def _settle(self, run: BacktestRun, status: RunStatus, error: str | None) -> None:
        """Move a run to a terminal state even if the store is failing."""
        if run.is_terminal:
            return
        run.error = error
        try:
            await self._transition(run, status)
        except Exception:
            logger.exception("Could not persist %s state for %s", status.value, run.id)
            # Report the terminal state in memory even though the store lags
            run.transition_to(status)
            self._runs[run.id] = run
            return
        await self._finalize(run.id)

    async def _finalize(self, run_id: str) -> None:
        try:
            await self._store.finalize_run(run_id)
        except Exception:
            logger.exception("Could not write artefacts for %s", run_id)

    # =========================================================================
    # Events
    # =========================================================================

    async def _publish_progress(self, run: BacktestRun, point: EquityPoint) -> None:
        total = run.total_bars or 1
        await self._publish(
            run.id,
            BacktestEventType.PROGRESS,
            {
                "run_id": run.id,
                "bars_processed": run.bars_processed,
                "total_bars": run.total_bars,
                "progress_pct": round(run.bars_processed / total * 100.0, 2),
                "current_equity": point.total_equity,
                "current_timestamp": point.timestamp.isoformat(),
            },
        )
        await self._publish(
            run.id, BacktestEventType.EQUITY_UPDATE, point.model_dump(mode="json")
        )

    async def _publish(
        self,
        run_id: str,
        event_type: BacktestEventType,
        data: dict[str, Any],
    ) -> None:
        try:
            await self._bus.publish(Event(type=event_type, run_id=run_id, data=data))
        except Exception:
            logger.exception("Failed to publish %s for %s", event_type.value, run_id)
