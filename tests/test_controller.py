"""
Tests for the backtest controller.

Covers run lifecycle, causality, determinism, conservation, failure handling,
cancellation and event emission.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from simtrade_engine.backtest.controller import BacktestController
from simtrade_engine.backtest.errors import (
    BacktestConfigError,
    PersistenceError,
    RunStateError,
    UnknownStrategyError,
)
from simtrade_engine.backtest.models import (
    AlertSeverity,
    AlertType,
    BacktestRun,
    ExitReason,
    RunStatus,
    Signal,
    TradeSide,
)
from simtrade_engine.config import Settings
from simtrade_engine.domain.bar import BarInterval
from simtrade_engine.interfaces.strategy import StrategyEvaluator
from simtrade_engine.runtime.event_bus import BacktestEventType, Event, EventBus
from simtrade_engine.storage.memory import (
    InMemoryBacktestStore,
    InMemoryBarProvider,
    InMemoryStrategyStore,
)
from simtrade_engine.strategies.evaluator import StrategyDefinition
from tests.synthetic_bars import (
    START,
    ExplodingEvaluator,
    FlakyEvaluator,
    GatedEvaluator,
    ScriptedEvaluator,
    make_bars,
    make_config,
    trending,
)

# =============================================================================
# Fixtures
# =============================================================================


class Harness:
    """Controller wired to in-memory collaborators."""

    def __init__(
        self,
        data_dir: Path,
        evaluator: StrategyEvaluator,
        closes: list[float] | None = None,
        strategy: StrategyDefinition | None = None,
        store: InMemoryBacktestStore | None = None,
        **settings_overrides,
    ):
        self.store = store if store is not None else InMemoryBacktestStore()
        self.bars = InMemoryBarProvider()
        self.strategies = InMemoryStrategyStore([strategy or StrategyDefinition(id="scripted")])
        self.bus = EventBus(queue_size=1000)
        self.evaluator = evaluator
        self.settings = Settings(data_dir=data_dir, **settings_overrides)
        if closes is not None:
            self.bars.add_bars("TEST", BarInterval.DAILY, make_bars(closes))
        self.controller = BacktestController(
            store=self.store,
            bar_provider=self.bars,
            strategy_store=self.strategies,
            event_bus=self.bus,
            settings=self.settings,
            evaluator_factory=lambda strategy: self.evaluator,
        )

    async def run(self, **config_overrides):
        run_id = await self.controller.start(make_config(**config_overrides))
        run = await self.controller.wait(run_id)
        await self.bus.drain()
        return run


class RejectCompletedStore(InMemoryBacktestStore):
    """Store whose write of the COMPLETED state fails."""

    async def update_run(self, run: BacktestRun) -> None:
        if run.status == RunStatus.COMPLETED:
            raise PersistenceError("disk full")
        await super().update_run(run)


# =============================================================================
# Completed runs
# =============================================================================


class TestCompletedRun:
    """Tests for a run that replays every bar."""

    @pytest.mark.asyncio
    async def test_run_completes_and_persists(self, temp_data_dir: Path) -> None:
        evaluator = ScriptedEvaluator({5: Signal.BUY, 15: Signal.SELL, 20: Signal.BUY})
        h = Harness(temp_data_dir, evaluator, closes=trending(30))

        run = await h.run()

        assert run.status == RunStatus.COMPLETED
        assert run.bars_processed == 30
        assert run.total_bars == 30
        assert run.started_at is not None and run.completed_at is not None
        stored = await h.store.get_run(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.metrics == run.metrics

        trades, total = await h.store.list_trades(run.id)
        assert total == 4
        assert [t.side for t in trades] == [
            TradeSide.BUY,
            TradeSide.SELL,
            TradeSide.BUY,
            TradeSide.SELL,
        ]
        assert trades[-1].exit_reason == ExitReason.DATA_END
        assert run.metrics.total_trades == 2

        points = await h.store.list_equity_points(run.id)
        assert len(points) == 30
        assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)

    @pytest.mark.asyncio
    async def test_conservation(self, temp_data_dir: Path) -> None:
        """Realized P&L sums to the change in equity once the book is flat."""
        evaluator = ScriptedEvaluator({1: Signal.BUY, 9: Signal.SELL, 12: Signal.BUY})
        h = Harness(temp_data_dir, evaluator, closes=trending(25))

        run = await h.run(slippage_bps=12.0, commission_per_trade=2.5)

        trades, _ = await h.store.list_trades(run.id)
        realized = sum(t.realized_pl for t in trades if t.side == TradeSide.SELL)
        assert realized == pytest.approx(run.metrics.final_equity - 10000.0)
        assert run.metrics.final_cash == run.metrics.final_equity

    @pytest.mark.asyncio
    async def test_evaluator_sees_only_past_bars(self, temp_data_dir: Path) -> None:
        evaluator = ScriptedEvaluator()
        h = Harness(temp_data_dir, evaluator, closes=trending(12))

        await h.run()

        assert evaluator.seen_lengths == list(range(1, 13))
        assert evaluator.seen_last == [START + timedelta(days=i) for i in range(12)]

    @pytest.mark.asyncio
    async def test_deterministic_replay(self, temp_data_dir: Path) -> None:
        signals = {2: Signal.BUY, 8: Signal.SELL, 11: Signal.BUY, 17: Signal.SELL}
        results = []
        for _ in range(2):
            h = Harness(temp_data_dir, ScriptedEvaluator(signals), closes=trending(20))
            run = await h.run(slippage_bps=7.0, commission_per_trade=1.0)
            trades, _ = await h.store.list_trades(run.id)
            points = await h.store.list_equity_points(run.id)
            results.append(
                (
                    [(t.side, t.quantity, t.executed_price, t.realized_pl) for t in trades],
                    [p.total_equity for p in points],
                    run.metrics.model_dump(),
                )
            )
        assert results[0] == results[1]

    @pytest.mark.asyncio
    async def test_flat_prices_no_signals(self, temp_data_dir: Path) -> None:
        h = Harness(temp_data_dir, ScriptedEvaluator(), closes=[100.0] * 15)

        run = await h.run()

        assert run.metrics.total_trades == 0
        assert run.metrics.final_equity == 10000.0
        assert run.metrics.max_drawdown == 0.0
        assert run.metrics.sharpe_ratio is None

    @pytest.mark.asyncio
    async def test_zero_bars(self, temp_data_dir: Path) -> None:
        h = Harness(temp_data_dir, ScriptedEvaluator())

        run = await h.run()

        assert run.status == RunStatus.COMPLETED
        assert run.bars_processed == 0
        assert run.metrics.final_equity == 10000.0
        assert run.metrics.total_trades == 0
        assert run.metrics.max_drawdown is None
        assert await h.store.list_equity_points(run.id) == []

    @pytest.mark.asyncio
    async def test_signal_error_becomes_alert(self, temp_data_dir: Path) -> None:
        h = Harness(temp_data_dir, FlakyEvaluator(failing_index=3), closes=trending(8))

        run = await h.run()

        assert run.status == RunStatus.COMPLETED
        alerts = await h.store.list_alerts(run.id)
        signal_alerts = [a for a in alerts if a.alert_type == AlertType.SIGNAL_ERROR]
        assert len(signal_alerts) == 1
        assert signal_alerts[0].severity == AlertSeverity.HIGH
        assert "bar 3" in signal_alerts[0].message

    @pytest.mark.asyncio
    async def test_stop_loss_from_strategy(self, temp_data_dir: Path) -> None:
        strategy = StrategyDefinition(id="scripted", stop_loss_pct=5.0)
        h = Harness(
            temp_data_dir,
            ScriptedEvaluator({0: Signal.BUY}),
            closes=[100.0, 94.9, 94.0],
            strategy=strategy,
        )

        run = await h.run()

        trades, _ = await h.store.list_trades(run.id)
        assert trades[-1].exit_reason == ExitReason.STOP_LOSS
        assert trades[-1].execution_bar == START + timedelta(days=1)


# =============================================================================
# Failure and cancellation
# =============================================================================


class TestFailures:
    """Tests for failed and cancelled runs."""

    @pytest.mark.asyncio
    async def test_error_mid_run_fails_the_run(self, temp_data_dir: Path) -> None:
        evaluator = ExplodingEvaluator(at_index=5, error=RuntimeError("feed exploded"))
        h = Harness(temp_data_dir, evaluator, closes=trending(20))
        events: list[Event] = []
        await h.bus.subscribe(None, events.append)

        run = await h.run()

        assert run.status == RunStatus.FAILED
        assert run.error == "feed exploded"
        stored = await h.store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error
        # Points buffered before the failure are kept
        assert len(await h.store.list_equity_points(run.id)) == 5
        assert events[-1].type == BacktestEventType.FAILED
        assert events[-1].data["error"] == "feed exploded"

    @pytest.mark.asyncio
    async def test_completed_write_failure_settles_as_failed(self, temp_data_dir: Path) -> None:
        h = Harness(
            temp_data_dir,
            ScriptedEvaluator({0: Signal.BUY}),
            closes=trending(10),
            store=RejectCompletedStore(),
        )
        events: list[Event] = []
        await h.bus.subscribe(None, events.append)

        run = await h.run()

        assert run.status == RunStatus.FAILED
        assert run.error == "disk full"
        stored = await h.store.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error == run.error
        assert h.controller.get_run(run.id).status == RunStatus.FAILED

        assert events[-1].type == BacktestEventType.FAILED
        assert events[-1].data["error"] == run.error
        statuses = [
            e.data["new_status"] for e in events if e.type == BacktestEventType.STATUS_CHANGED
        ]
        assert statuses == ["RUNNING", "FAILED"]

    @pytest.mark.asyncio
    async def test_failed_run_cannot_be_updated(self, temp_data_dir: Path) -> None:
        evaluator = ExplodingEvaluator(at_index=0, error=RuntimeError("boom"))
        h = Harness(temp_data_dir, evaluator, closes=trending(5))
        run = await h.run()

        with pytest.raises(RunStateError):
            run.transition_to(RunStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_bar(self, temp_data_dir: Path) -> None:
        evaluator = GatedEvaluator(pause_at=3)
        h = Harness(temp_data_dir, evaluator, closes=trending(50))
        run_id = await h.controller.start(make_config())

        await asyncio.wait_for(evaluator.reached.wait(), timeout=5)
        assert await h.controller.cancel(run_id) is True
        evaluator.release.set()
        run = await h.controller.wait(run_id)

        assert run.status == RunStatus.CANCELLED
        assert run.bars_processed == 4
        stored = await h.store.get_run(run_id)
        assert stored.status == RunStatus.CANCELLED
        assert await h.controller.cancel(run_id) is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_runs(self, temp_data_dir: Path) -> None:
        evaluator = GatedEvaluator(pause_at=1)
        h = Harness(temp_data_dir, evaluator, closes=trending(10))
        run_id = await h.controller.start(make_config())
        await asyncio.wait_for(evaluator.reached.wait(), timeout=5)

        evaluator.release.set()
        await h.controller.shutdown()

        assert h.controller.active_runs() == []
        assert h.controller.get_run(run_id).is_terminal


# =============================================================================
# Config validation
# =============================================================================


class TestStartValidation:
    """Tests for errors raised synchronously by start()."""

    @pytest.mark.asyncio
    async def test_start_after_end(self, temp_data_dir: Path) -> None:
        h = Harness(temp_data_dir, ScriptedEvaluator())
        with pytest.raises(BacktestConfigError):
            await h.controller.start(make_config(end_date=START))
        assert await h.store.list_runs() == []

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, temp_data_dir: Path) -> None:
        h = Harness(temp_data_dir, ScriptedEvaluator())
        with pytest.raises(UnknownStrategyError) as exc_info:
            await h.controller.start(make_config(strategy_id="missing"))
        assert exc_info.value.strategy_id == "missing"

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, temp_data_dir: Path) -> None:
        evaluator = GatedEvaluator(pause_at=0)
        h = Harness(temp_data_dir, evaluator, closes=trending(5), max_concurrent_runs=1)
        first = await h.controller.start(make_config())
        await asyncio.wait_for(evaluator.reached.wait(), timeout=5)

        with pytest.raises(BacktestConfigError):
            await h.controller.start(make_config())

        evaluator.release.set()
        run = await h.controller.wait(first)
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_isolated(self, temp_data_dir: Path) -> None:
        h = Harness(temp_data_dir, ScriptedEvaluator({0: Signal.BUY}), closes=trending(15))
        ids = [await h.controller.start(make_config()) for _ in range(3)]
        runs = [await h.controller.wait(run_id) for run_id in ids]

        assert len(set(ids)) == 3
        assert all(r.status == RunStatus.COMPLETED for r in runs)
        for run_id in ids:
            trades, _ = await h.store.list_trades(run_id)
            assert {t.run_id for t in trades} == {run_id}


# =============================================================================
# Events
# =============================================================================


class TestRunEvents:
    """Tests for events published during a run."""

    @pytest.mark.asyncio
    async def test_lifecycle_and_progress_events(self, temp_data_dir: Path) -> None:
        h = Harness(
            temp_data_dir,
            ScriptedEvaluator({2: Signal.BUY, 6: Signal.SELL}),
            closes=trending(12),
            progress_every_n_bars=5,
        )
        first: list[Event] = []
        second: list[Event] = []
        await h.bus.subscribe(None, first.append)
        await h.bus.subscribe(None, second.append)

        run = await h.run()

        types = [e.type for e in first]
        assert [e.id for e in first] == [e.id for e in second]
        assert types[0] == BacktestEventType.STATUS_CHANGED
        assert types[1] == BacktestEventType.STARTED
        assert types[-1] == BacktestEventType.COMPLETED
        assert all(e.run_id == run.id for e in first)

        progress = [e for e in first if e.type == BacktestEventType.PROGRESS]
        assert [e.data["bars_processed"] for e in progress] == [5, 10, 12]
        assert progress[-1].data["progress_pct"] == 100.0
        assert types.count(BacktestEventType.EQUITY_UPDATE) == 3
        assert types.count(BacktestEventType.TRADE_EXECUTED) == 2
        assert first[-1].data["metrics"]["total_trades"] == 1
