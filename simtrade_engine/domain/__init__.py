"""
Domain models for the SimTrade engine.

- Bar: OHLCV price data for one interval
- BarInterval: Supported bar sizes
- TimeHorizon: Strategy holding horizon, mapped to a default interval
"""

from simtrade_engine.domain.bar import Bar, BarInterval, TimeHorizon

__all__ = ["Bar", "BarInterval", "TimeHorizon"]
