"""
Exception hierarchy for backtest execution.

Configuration errors are raised synchronously by the controller before a run
exists. Everything raised later is classified by where it happens: bar-local
failures become alerts, structural failures end the run as FAILED.
"""


class BacktestError(Exception):
    """Base class for backtest errors."""


class BacktestConfigError(BacktestError):
    """Invalid backtest configuration, reported before any run is created."""


class UnknownStrategyError(BacktestConfigError):
    """The configured strategy does not exist in the strategy store."""

    def __init__(self, strategy_id: str):
        super().__init__(f"Unknown strategy: {strategy_id}")
        self.strategy_id = strategy_id


class RunStateError(BacktestError):
    """Illegal run status transition or mutation of a terminal run."""


class SignalEvaluationError(BacktestError):
    """Strategy evaluation failed for a single bar."""


class DataLoadError(BacktestError):
    """Historical bars could not be loaded."""


class PersistenceError(BacktestError):
    """A run record, trade or equity point could not be stored."""
