"""
SimTrade Engine - FastAPI Application

Main entry point for the backtest service.
Provides the REST API and the SSE run stream.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI
from pydantic import BaseModel

from simtrade_engine import __version__
from simtrade_engine.api.backtest_routes import peek_controller
from simtrade_engine.api.backtest_routes import router as backtest_router
from simtrade_engine.api.diagnostics_routes import router as diagnostics_router
from simtrade_engine.config import Settings, get_settings, get_settings_dep
from simtrade_engine.logging import get_logger, setup_logging
from simtrade_engine.runtime.event_bus import get_event_bus

# Setup logging
setup_logging(level=get_settings().log_level, json_output=get_settings().log_json)
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    time: str
    uptime_seconds: float
    active_runs: int


# =============================================================================
# Application State
# =============================================================================


class AppState:
    """Application state container."""

    def __init__(self) -> None:
        self.start_time: datetime = datetime.now(UTC)


state = AppState()


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    logger.info("Starting SimTrade Engine v%s (%s)", __version__, settings.env.value)
    logger.info("Data directory: %s", settings.data_dir)
    logger.info("Server: http://%s:%d", settings.host, settings.port)
    state.start_time = datetime.now(UTC)

    yield

    logger.info("Shutting down SimTrade Engine")
    controller = peek_controller()
    if controller is not None:
        await controller.shutdown()
    await get_event_bus().close()


# =============================================================================
# FastAPI Application
# =============================================================================


app = FastAPI(
    title="SimTrade Engine",
    description="Bar-by-bar strategy backtesting with streamed progress",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(backtest_router)
app.include_router(diagnostics_router)


# =============================================================================
# REST Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    Health check endpoint.

    Returns current status, version, uptime and the number of running backtests.
    """
    now = datetime.now(UTC)
    uptime = (now - state.start_time).total_seconds()
    controller = peek_controller()

    return HealthResponse(
        status="healthy",
        version=__version__,
        time=now.isoformat(),
        uptime_seconds=round(uptime, 2),
        active_runs=len(controller.active_runs()) if controller else 0,
    )


@app.get("/config")
async def config(settings: Settings = Depends(get_settings_dep)) -> dict[str, Any]:
    """Current configuration."""
    return settings.get_public_config()


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint with API info."""
    return {
        "name": "SimTrade Engine",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "simtrade_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env.value == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
