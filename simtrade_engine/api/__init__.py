"""
FastAPI route modules for the SimTrade engine.
"""

from simtrade_engine.api.backtest_routes import router as backtest_router
from simtrade_engine.api.diagnostics_routes import router as diagnostics_router

__all__ = ["backtest_router", "diagnostics_router"]
