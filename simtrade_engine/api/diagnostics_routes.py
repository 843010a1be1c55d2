"""
Diagnostics API routes.

Provides engine introspection:
- Recent log lines, optionally for a single run
- Event bus delivery statistics
"""

from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from simtrade_engine.api.backtest_routes import get_bus, peek_controller
from simtrade_engine.logging import get_in_memory_logs, get_logger
from simtrade_engine.runtime.event_bus import EventBus

router = APIRouter(prefix="/diagnostics", tags=["Diagnostics"])
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class LogsResponse(BaseModel):
    """Recent log lines."""

    logs: list[dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class BusDiagnostics(BaseModel):
    """Event bus statistics and active runs."""

    stats: dict[str, Any] = Field(default_factory=dict)
    wildcard_subscribers: int = 0
    active_runs: list[str] = Field(default_factory=list)
    timestamp: str


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/logs", response_model=LogsResponse)
async def get_logs(
    level: str = Query(default="INFO"),
    limit: int = Query(default=50, ge=1, le=1000),
    run_id: str | None = Query(default=None),
) -> LogsResponse:
    """Recent log lines at or above a level."""
    logs = get_in_memory_logs(level=level, limit=limit, run_id=run_id)
    return LogsResponse(logs=logs, count=len(logs))


@router.get("/bus", response_model=BusDiagnostics)
async def get_bus_diagnostics(bus: EventBus = Depends(get_bus)) -> BusDiagnostics:
    """Event bus counters and currently running backtests."""
    stats = asdict(bus.stats)
    if stats["last_publish_ts"] is not None:
        stats["last_publish_ts"] = stats["last_publish_ts"].isoformat()

    controller = peek_controller()
    return BusDiagnostics(
        stats=stats,
        wildcard_subscribers=bus.subscriber_count(None),
        active_runs=controller.active_runs() if controller else [],
        timestamp=datetime.now(UTC).isoformat(),
    )
