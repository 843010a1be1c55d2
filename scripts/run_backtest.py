#!/usr/bin/env python3
"""
Command-line backtest runner.

Runs one backtest against the file-backed stores and prints the summary.

Usage:
    python scripts/run_backtest.py --strategy sma_cross --symbol AAPL
    python scripts/run_backtest.py --strategy sma_cross --symbol AAPL \\
        --start 2023-01-01 --end 2024-01-01 --cash 25000 --position-size 2500
"""

import argparse
import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from simtrade_engine.backtest.controller import BacktestController
from simtrade_engine.backtest.errors import BacktestConfigError
from simtrade_engine.backtest.models import BacktestConfig, BacktestRun, PositionSizing
from simtrade_engine.config import get_settings
from simtrade_engine.logging import setup_logging
from simtrade_engine.runtime.event_bus import BacktestEventType, Event, EventBus
from simtrade_engine.storage.files import FileBacktestStore, JsonStrategyStore
from simtrade_engine.storage.parquet_bars import ParquetBarProvider


async def run_backtest(config: BacktestConfig, data_dir: Path | None = None) -> BacktestRun:
    """Run a single backtest to completion and return its final record."""
    settings = get_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir.resolve()})

    bus = EventBus(queue_size=settings.event_queue_size)
    controller = BacktestController(
        store=FileBacktestStore(settings.runs_dir),
        bar_provider=ParquetBarProvider(settings.bars_dir),
        strategy_store=JsonStrategyStore(settings.strategies_dir),
        event_bus=bus,
        settings=settings,
    )

    def show_progress(event: Event) -> None:
        if event.type == BacktestEventType.PROGRESS:
            data = event.data
            print(
                f"  {data['progress_pct']:6.2f}%  bars {data['bars_processed']}/{data['total_bars']}"
                f"  equity {data['current_equity']:.2f}",
                flush=True,
            )

    await bus.subscribe(None, show_progress)
    run_id = await controller.start(config)
    run = await controller.wait(run_id)
    await bus.drain()
    await bus.close()
    return run


def print_summary(run: BacktestRun) -> None:
    print(f"\n{'=' * 60}")
    print(f"Run {run.id}: {run.status.value}")
    print(f"{'=' * 60}")
    if run.error:
        print(f"Error: {run.error}")
    if run.metrics is None:
        return

    m = run.metrics

    def fmt(value: float | None, suffix: str = "") -> str:
        return "n/a" if value is None else f"{value:.2f}{suffix}"

    print(f"Bars processed : {run.bars_processed}")
    print(f"Final equity   : {m.final_equity:.2f}")
    print(f"Total return   : {m.total_return:.2f} ({fmt(m.total_return_pct, '%')})")
    print(f"Sharpe         : {fmt(m.sharpe_ratio)}")
    print(f"Sortino        : {fmt(m.sortino_ratio)}")
    print(f"Max drawdown   : {fmt(m.max_drawdown, '%')}")
    print(f"Win rate       : {fmt(m.win_rate, '%')}")
    print(f"Profit factor  : {fmt(m.profit_factor)}")
    print(f"Trades         : {m.total_trades} ({m.winning_trades}W / {m.losing_trades}L)")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a SimTrade backtest")
    parser.add_argument("--strategy", required=True, help="Strategy id")
    parser.add_argument("--symbol", required=True, help="Symbol to trade")
    parser.add_argument("--start", default="2023-01-01", help="Start date (ISO)")
    parser.add_argument("--end", default="2024-01-01", help="End date (ISO)")
    parser.add_argument("--cash", type=float, default=10000.0, help="Initial cash")
    parser.add_argument("--position-size", type=float, default=1000.0, help="Position size")
    parser.add_argument(
        "--sizing",
        choices=[m.value for m in PositionSizing],
        default=PositionSizing.FIXED_DOLLAR.value,
        help="Position sizing method",
    )
    parser.add_argument("--slippage-bps", type=float, default=10.0, help="Slippage in bps")
    parser.add_argument("--commission", type=float, default=1.0, help="Commission per trade")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override data directory")
    args = parser.parse_args()

    setup_logging(level="WARNING")

    config = BacktestConfig(
        strategy_id=args.strategy,
        symbol=args.symbol,
        start_date=datetime.fromisoformat(args.start).replace(tzinfo=UTC),
        end_date=datetime.fromisoformat(args.end).replace(tzinfo=UTC),
        initial_cash=args.cash,
        position_size=args.position_size,
        position_sizing=PositionSizing(args.sizing),
        slippage_bps=args.slippage_bps,
        commission_per_trade=args.commission,
    )

    try:
        run = asyncio.run(run_backtest(config, args.data_dir))
    except BacktestConfigError as e:
        print(f"Invalid backtest: {e}", file=sys.stderr)
        return 2

    print_summary(run)
    return 0 if run.error is None else 1


if __name__ == "__main__":
    sys.exit(main())
