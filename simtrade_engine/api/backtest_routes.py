"""
Backtest API routes.

Endpoints for starting, cancelling, querying and streaming backtests.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from simtrade_engine.api.sse import stream_run_events
from simtrade_engine.backtest.controller import BacktestController
from simtrade_engine.backtest.equity import EquityResolution, downsample_equity
from simtrade_engine.backtest.errors import BacktestConfigError, UnknownStrategyError
from simtrade_engine.backtest.models import (
    Alert,
    BacktestConfig,
    BacktestRun,
    EquityPoint,
    RunStatus,
    Trade,
    TradeSide,
)
from simtrade_engine.config import Settings, get_settings_dep
from simtrade_engine.interfaces.persistence import BacktestStore
from simtrade_engine.logging import get_logger
from simtrade_engine.runtime.event_bus import EventBus, get_event_bus
from simtrade_engine.storage.files import FileBacktestStore, JsonStrategyStore
from simtrade_engine.storage.parquet_bars import ParquetBarProvider

router = APIRouter(prefix="/backtests", tags=["Backtest"])
logger = get_logger(__name__)

# Lazy-initialized service collaborators
_controller: BacktestController | None = None
_store: BacktestStore | None = None


def get_backtest_store(settings: Settings = Depends(get_settings_dep)) -> BacktestStore:
    """Get or create the run store singleton."""
    global _store
    if _store is None:
        _store = FileBacktestStore(settings.runs_dir)
    return _store


def get_bus() -> EventBus:
    """Dependency wrapper so tests can swap the event bus."""
    return get_event_bus()


def get_controller(
    settings: Settings = Depends(get_settings_dep),
    store: BacktestStore = Depends(get_backtest_store),
    bus: EventBus = Depends(get_bus),
) -> BacktestController:
    """Get or create the backtest controller singleton."""
    global _controller
    if _controller is None:
        _controller = BacktestController(
            store=store,
            bar_provider=ParquetBarProvider(settings.bars_dir),
            strategy_store=JsonStrategyStore(settings.strategies_dir),
            event_bus=bus,
            settings=settings,
        )
    return _controller


def peek_controller() -> BacktestController | None:
    """The controller if one has been created, without creating it."""
    return _controller


def reset_backtest_state() -> None:
    """Drop cached collaborators (for testing)."""
    global _controller, _store
    _controller = None
    _store = None


# =============================================================================
# Response Models
# =============================================================================


class RunResponse(BaseModel):
    """Response from starting a backtest."""

    ok: bool = True
    run_id: str
    message: str = ""


class CancelResponse(BaseModel):
    """Response from a cancel request."""

    ok: bool
    run_id: str
    message: str = ""


class RunsListResponse(BaseModel):
    """List of backtest runs."""

    runs: list[BacktestRun]
    total: int


class TradesResponse(BaseModel):
    """Paginated trades."""

    run_id: str
    trades: list[Trade]
    total: int
    limit: int
    offset: int


class EquityResponse(BaseModel):
    """Equity curve at the requested resolution."""

    run_id: str
    resolution: EquityResolution
    points: list[EquityPoint]
    total: int


class AlertsResponse(BaseModel):
    """Alerts raised for a run."""

    run_id: str
    alerts: list[Alert] = Field(default_factory=list)


async def _require_run(store: BacktestStore, run_id: str) -> BacktestRun:
    run = await store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Backtest '{run_id}' not found")
    return run


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=RunResponse, status_code=202)
async def start_backtest(
    config: BacktestConfig,
    controller: BacktestController = Depends(get_controller),
) -> RunResponse:
    """
    Start a backtest.

    Returns immediately with run_id. Follow /backtests/stream or poll
    /backtests/{run_id} for completion.
    """
    try:
        run_id = await controller.start(config)
    except UnknownStrategyError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except BacktestConfigError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return RunResponse(
        ok=True,
        run_id=run_id,
        message=f"Backtest started for {config.symbol} with strategy {config.strategy_id}",
    )


@router.get("", response_model=RunsListResponse)
async def list_backtests(
    strategy_id: str | None = Query(default=None),
    symbol: str | None = Query(default=None),
    status: RunStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    store: BacktestStore = Depends(get_backtest_store),
) -> RunsListResponse:
    """List runs, newest first."""
    runs = await store.list_runs(strategy_id=strategy_id, symbol=symbol, status=status, limit=limit)
    return RunsListResponse(runs=runs, total=len(runs))


@router.get("/stream")
async def stream_backtest(
    run_id: str | None = Query(default=None, description="Run to follow; omit for all runs"),
    settings: Settings = Depends(get_settings_dep),
    store: BacktestStore = Depends(get_backtest_store),
    bus: EventBus = Depends(get_bus),
) -> StreamingResponse:
    """Stream run events as Server-Sent Events."""
    if run_id is not None:
        await _require_run(store, run_id)

    frames = stream_run_events(
        bus,
        run_id,
        heartbeat_s=settings.stream_heartbeat_s,
        close_delay_s=settings.stream_close_delay_s,
        store=store,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{run_id}", response_model=BacktestRun)
async def get_backtest(
    run_id: str,
    store: BacktestStore = Depends(get_backtest_store),
) -> BacktestRun:
    """Run summary: status, config and final metrics."""
    return await _require_run(store, run_id)


@router.post("/{run_id}/cancel", response_model=CancelResponse)
async def cancel_backtest(
    run_id: str,
    controller: BacktestController = Depends(get_controller),
    store: BacktestStore = Depends(get_backtest_store),
) -> CancelResponse:
    """Ask a running backtest to stop before its next bar."""
    run = await _require_run(store, run_id)
    if run.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Backtest '{run_id}' already {run.status.value}",
        )
    ok = await controller.cancel(run_id)
    return CancelResponse(
        ok=ok,
        run_id=run_id,
        message="Cancellation requested" if ok else "Run is not active in this process",
    )


@router.get("/{run_id}/trades", response_model=TradesResponse)
async def get_trades(
    run_id: str,
    side: TradeSide | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    store: BacktestStore = Depends(get_backtest_store),
) -> TradesResponse:
    """Trades in execution order, optionally filtered by side."""
    await _require_run(store, run_id)
    trades, total = await store.list_trades(run_id, side=side, limit=limit, offset=offset)
    return TradesResponse(run_id=run_id, trades=trades, total=total, limit=limit, offset=offset)


@router.get("/{run_id}/equity-curve", response_model=EquityResponse)
async def get_equity_curve(
    run_id: str,
    resolution: EquityResolution = Query(default=EquityResolution.FULL),
    store: BacktestStore = Depends(get_backtest_store),
) -> EquityResponse:
    """Equity curve, optionally reduced to the last point per hour or day."""
    await _require_run(store, run_id)
    points = await store.list_equity_points(run_id)
    points = downsample_equity(points, resolution)
    return EquityResponse(run_id=run_id, resolution=resolution, points=points, total=len(points))


@router.get("/{run_id}/alerts", response_model=AlertsResponse)
async def get_alerts(
    run_id: str,
    store: BacktestStore = Depends(get_backtest_store),
) -> AlertsResponse:
    """Operational and performance alerts for a run."""
    await _require_run(store, run_id)
    alerts: list[Any] = await store.list_alerts(run_id)
    return AlertsResponse(run_id=run_id, alerts=alerts)
