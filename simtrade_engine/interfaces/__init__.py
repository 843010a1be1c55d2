"""
Interfaces (abstract base classes) for the SimTrade engine.

These define the contracts that must be implemented by:
- BarProvider: Historical bar access
- StrategyEvaluator: Signal generation from bar history

Store contracts live in simtrade_engine.interfaces.persistence.
"""

from simtrade_engine.interfaces.data_provider import BarProvider
from simtrade_engine.interfaces.strategy import StrategyEvaluator

__all__ = ["BarProvider", "StrategyEvaluator"]
