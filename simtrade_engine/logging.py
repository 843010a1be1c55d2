"""
Logging configuration for the SimTrade backtest engine.

Provides consistent logging format across all modules with:
- JSON-shaped output for production
- Human-readable output for development
- Run ID tracking so every line emitted by a backtest task carries its run
- In-memory ring buffer for the diagnostics endpoint
"""

import logging
import sys
from collections import deque
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variable for tracking run IDs across async operations.
# asyncio tasks copy the context at creation, so each run task sees its own.
current_run_id: ContextVar[str | None] = ContextVar("current_run_id", default=None)


class SimTradeFormatter(logging.Formatter):
    """
    Formatter that stamps records with an ISO timestamp and the current run id.
    """

    def format(self, record: logging.LogRecord) -> str:
        # Add timestamp in ISO format
        record.timestamp = datetime.now(UTC).isoformat()

        # Add run_id if available
        run_id = current_run_id.get()
        record.run_id = f"[{run_id}] " if run_id else ""

        return super().format(record)


class InMemoryHandler(logging.Handler):
    """In-memory log handler for diagnostics."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.logs: deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            # Raw message plus the run id of the emitting task
            self.logs.append(
                {
                    "timestamp": getattr(record, "timestamp", datetime.now(UTC).isoformat()),
                    "level": record.levelname,
                    "level_no": record.levelno,
                    "logger": record.name,
                    "run_id": current_run_id.get(),
                    "message": record.getMessage(),
                }
            )
        except Exception:
            self.handleError(record)


_in_memory_handler = InMemoryHandler()


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure logging for the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON-shaped lines

    Returns:
        Configured root logger
    """
    # Clear any existing handlers
    root = logging.getLogger()
    root.handlers.clear()

    # Set level
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    # Create stream handler
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    # Set format based on environment
    if json_output:
        # JSON-shaped lines for log shippers
        fmt = (
            '{"timestamp": "%(timestamp)s", "level": "%(levelname)s", '
            '"module": "%(name)s", "run_id": "%(run_id)s", "message": "%(message)s"}'
        )
    else:
        # Human-readable format for development
        fmt = "%(timestamp)s | %(levelname)-8s | %(name)s | %(run_id)s%(message)s"

    formatter = SimTradeFormatter(fmt)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Keep recent lines for /diagnostics/logs
    _in_memory_handler.setLevel(numeric_level)
    _in_memory_handler.setFormatter(formatter)
    root.addHandler(_in_memory_handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_in_memory_logs(
    level: str = "INFO",
    limit: int = 50,
    run_id: str | None = None,
) -> list[dict[str, Any]]:
    """Get filtered logs from memory, optionally for a single run."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    filtered = [
        log
        for log in _in_memory_handler.logs
        if log["level_no"] >= numeric_level and (run_id is None or log["run_id"] == run_id)
    ]
    return filtered[-limit:]


def set_run_id(run_id: str) -> None:
    """Set the current run ID for log correlation."""
    current_run_id.set(run_id)


def clear_run_id() -> None:
    """Clear the current run ID."""
    current_run_id.set(None)
