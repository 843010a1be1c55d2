"""
Runtime utilities for the SimTrade engine.

Provides:
- Event bus for per-run pub/sub
- Run ID generation
"""

from simtrade_engine.runtime.event_bus import (
    BacktestEventType,
    Event,
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from simtrade_engine.runtime.run_context import generate_run_id

__all__ = [
    "BacktestEventType",
    "Event",
    "EventBus",
    "generate_run_id",
    "get_event_bus",
    "reset_event_bus",
]
