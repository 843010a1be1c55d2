"""
Backtest core.

Provides deterministic, bar-driven backtesting with:
- VirtualPortfolioEngine for fills, equity and drawdown
- Metrics calculation (Sharpe, Sortino, drawdown, trade statistics)
- BacktestController for run lifecycle and concurrency
"""

from simtrade_engine.backtest.errors import (
    BacktestConfigError,
    BacktestError,
    RunStateError,
    SignalEvaluationError,
    UnknownStrategyError,
)
from simtrade_engine.backtest.models import (
    Alert,
    BacktestConfig,
    BacktestRun,
    EquityPoint,
    MetricsSummary,
    RunStatus,
    Signal,
    Trade,
)

__all__ = [
    "Alert",
    "BacktestConfig",
    "BacktestConfigError",
    "BacktestError",
    "BacktestRun",
    "EquityPoint",
    "MetricsSummary",
    "RunStateError",
    "RunStatus",
    "Signal",
    "SignalEvaluationError",
    "Trade",
    "UnknownStrategyError",
]
