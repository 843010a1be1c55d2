"""
SimTrade Engine

Bar-by-bar strategy backtesting:
- Virtual portfolio with slippage, commission and risk exits
- Performance metrics (Sharpe, Sortino, drawdown, trade statistics)
- Concurrent runs with live progress over an in-process event bus
- FastAPI service with an SSE run stream
"""

__version__ = "1.0.0"

from simtrade_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
