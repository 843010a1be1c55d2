"""
Strategy evaluator interface.

Defines the contract between the backtest controller and whatever decides
BUY / SELL / HOLD for a bar.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from simtrade_engine.backtest.models import Signal
from simtrade_engine.domain.bar import Bar


class StrategyEvaluator(ABC):
    """
    Abstract base class for strategy evaluators.

    Evaluators must be deterministic: the same history and position state
    always produce the same signal.
    """

    @abstractmethod
    async def evaluate(self, bars: Sequence[Bar], position_open: bool) -> Signal:
        """
        Decide what to do on the latest bar.

        Args:
            bars: History up to and including the current bar, oldest first.
                Never contains bars after the current one.
            position_open: Whether the portfolio currently holds a position

        Returns:
            Signal for the current bar.

        Raises:
            SignalEvaluationError: The bar could not be evaluated; the run
                records an alert and treats the bar as HOLD.
        """
