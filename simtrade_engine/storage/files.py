"""
File-backed run and strategy stores.

Run layout:
{data_dir}/runs/{run_id}/
    manifest.json        # Run id, config snapshot, engine version
    run.json             # Latest run record
    trades.jsonl         # Append-only fills
    equity.jsonl         # Append-only equity points
    alerts.jsonl         # Append-only alerts
    trades.parquet       # Written on finalize
    equity_curve.parquet # Written on finalize
    metrics.json         # Written on finalize

Strategy layout:
{data_dir}/strategies/{strategy_id}.json
"""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import pandas as pd
from pydantic import BaseModel, ValidationError

from simtrade_engine import __version__
from simtrade_engine.backtest.errors import PersistenceError, RunStateError
from simtrade_engine.backtest.models import (
    Alert,
    BacktestRun,
    EquityPoint,
    RunStatus,
    Trade,
    TradeSide,
)
from simtrade_engine.interfaces.persistence import BacktestStore, StrategyStore
from simtrade_engine.logging import get_logger
from simtrade_engine.strategies.evaluator import StrategyDefinition

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _append_jsonl(path: Path, records: list[BaseModel]) -> None:
    with open(path, "a") as f:
        for record in records:
            f.write(record.model_dump_json() + "\n")


def _read_jsonl(path: Path, model: type[M]) -> list[M]:
    if not path.exists():
        return []
    with open(path) as f:
        return [model.model_validate_json(line) for line in f if line.strip()]


class FileBacktestStore(BacktestStore):
    """
    Run store writing JSON/JSONL under a runs directory.

    All file I/O runs in a worker thread. Each run is written by a single
    task, so per-run append order is preserved.
    """

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    # =========================================================================
    # Run records
    # =========================================================================

    async def create_run(self, run: BacktestRun) -> None:
        async with self._lock:
            await asyncio.to_thread(self._create_run, run)

    def _create_run(self, run: BacktestRun) -> None:
        run_dir = self.run_dir(run.id)
        if (run_dir / "run.json").exists():
            raise PersistenceError(f"Run {run.id} already exists")
        run_dir.mkdir(parents=True, exist_ok=True)

        manifest = {
            "run_id": run.id,
            "engine_version": __version__,
            "created_at": run.created_at.isoformat(),
            "config": run.config.model_dump(mode="json"),
        }
        with open(run_dir / "manifest.json", "w") as f:
            json.dump(manifest, f, indent=2)
        self._write_run(run)

    async def update_run(self, run: BacktestRun) -> None:
        async with self._lock:
            stored = await asyncio.to_thread(self._read_run, run.id)
            if stored is None:
                raise PersistenceError(f"Run {run.id} does not exist")
            if stored.is_terminal:
                raise RunStateError(f"Run {run.id} is {stored.status.value} and cannot change")
            await asyncio.to_thread(self._write_run, run)

    def _write_run(self, run: BacktestRun) -> None:
        path = self.run_dir(run.id) / "run.json"
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(run.model_dump_json(indent=2))
        tmp.replace(path)

    def _read_run(self, run_id: str) -> BacktestRun | None:
        path = self.run_dir(run_id) / "run.json"
        if not path.exists():
            return None
        try:
            return BacktestRun.model_validate_json(path.read_text())
        except ValidationError as e:
            raise PersistenceError(f"Corrupt run record {path}: {e}") from e

    async def get_run(self, run_id: str) -> BacktestRun | None:
        return await asyncio.to_thread(self._read_run, run_id)

    async def list_runs(
        self,
        strategy_id: str | None = None,
        symbol: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[BacktestRun]:
        return await asyncio.to_thread(self._list_runs, strategy_id, symbol, status, limit)

    def _list_runs(
        self,
        strategy_id: str | None,
        symbol: str | None,
        status: RunStatus | None,
        limit: int,
    ) -> list[BacktestRun]:
        runs: list[BacktestRun] = []
        for run_dir in self.runs_dir.iterdir():
            if not run_dir.is_dir():
                continue
            try:
                run = self._read_run(run_dir.name)
            except PersistenceError:
                logger.warning("Skipping unreadable run directory %s", run_dir)
                continue
            if run is None:
                continue
            if strategy_id is not None and run.config.strategy_id != strategy_id:
                continue
            if symbol is not None and run.config.symbol != symbol:
                continue
            if status is not None and run.status != status:
                continue
            runs.append(run)
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    # =========================================================================
    # Append-only history
    # =========================================================================

    async def append_trades(self, run_id: str, trades: list[Trade]) -> None:
        if trades:
            await asyncio.to_thread(_append_jsonl, self.run_dir(run_id) / "trades.jsonl", trades)

    async def append_equity_points(self, run_id: str, points: list[EquityPoint]) -> None:
        if points:
            await asyncio.to_thread(_append_jsonl, self.run_dir(run_id) / "equity.jsonl", points)

    async def append_alerts(self, run_id: str, alerts: list[Alert]) -> None:
        if alerts:
            await asyncio.to_thread(_append_jsonl, self.run_dir(run_id) / "alerts.jsonl", alerts)

    async def list_trades(
        self,
        run_id: str,
        side: TradeSide | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Trade], int]:
        trades = await asyncio.to_thread(
            _read_jsonl, self.run_dir(run_id) / "trades.jsonl", Trade
        )
        if side is not None:
            trades = [t for t in trades if t.side == side]
        return trades[offset : offset + limit], len(trades)

    async def list_equity_points(self, run_id: str) -> list[EquityPoint]:
        return await asyncio.to_thread(
            _read_jsonl, self.run_dir(run_id) / "equity.jsonl", EquityPoint
        )

    async def list_alerts(self, run_id: str) -> list[Alert]:
        return await asyncio.to_thread(_read_jsonl, self.run_dir(run_id) / "alerts.jsonl", Alert)

    # =========================================================================
    # Artefacts
    # =========================================================================

    async def finalize_run(self, run_id: str) -> None:
        """Write parquet and metrics artefacts for a terminal run."""
        await asyncio.to_thread(self._write_artefacts, run_id)

    def _write_artefacts(self, run_id: str) -> dict[str, str]:
        run_dir = self.run_dir(run_id)
        run = self._read_run(run_id)
        artefact_paths: dict[str, str] = {}

        trades = _read_jsonl(run_dir / "trades.jsonl", Trade)
        if trades:
            trades_df = pd.DataFrame([t.model_dump(mode="json") for t in trades])
            trades_path = run_dir / "trades.parquet"
            trades_df.to_parquet(trades_path, index=False)
            artefact_paths["trades"] = trades_path.name

        points = _read_jsonl(run_dir / "equity.jsonl", EquityPoint)
        if points:
            equity_df = pd.DataFrame([p.model_dump() for p in points])
            equity_path = run_dir / "equity_curve.parquet"
            equity_df.to_parquet(equity_path, index=False)
            artefact_paths["equity_curve"] = equity_path.name

        metrics_path = run_dir / "metrics.json"
        with open(metrics_path, "w") as f:
            json.dump(
                {
                    "run_id": run_id,
                    "status": run.status.value if run else None,
                    "metrics": run.metrics.model_dump(mode="json") if run and run.metrics else None,
                    "written_at": datetime.now(UTC).isoformat(),
                },
                f,
                indent=2,
            )
        artefact_paths["metrics"] = metrics_path.name

        logger.info("Wrote artefacts for %s: %s", run_id, sorted(artefact_paths))
        return artefact_paths


class JsonStrategyStore(StrategyStore):
    """Strategies stored one JSON document per file."""

    def __init__(self, strategies_dir: Path) -> None:
        self.strategies_dir = strategies_dir
        self.strategies_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, strategy_id: str) -> Path:
        return self.strategies_dir / f"{strategy_id}.json"

    async def get_strategy(self, strategy_id: str) -> StrategyDefinition | None:
        path = self.path_for(strategy_id)
        if path.parent != self.strategies_dir or not path.is_file():
            return None
        raw = await asyncio.to_thread(path.read_text)
        try:
            return StrategyDefinition.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(f"Invalid strategy file {path}: {e}") from e

    def save_strategy(self, strategy: StrategyDefinition) -> Path:
        path = self.path_for(strategy.id)
        path.write_text(strategy.model_dump_json(indent=2))
        return path
