"""
Pytest configuration and shared fixtures.
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("SIMTRADE_ENV", "development")
os.environ.setdefault("SIMTRADE_DATA_DIR", tempfile.mkdtemp(prefix="simtrade-test-"))


@pytest.fixture
def temp_data_dir(tmp_path: Path) -> Path:
    """Per-test data directory."""
    return tmp_path


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset module-level singletons between tests."""
    yield

    from simtrade_engine.api import backtest_routes
    from simtrade_engine.config import get_settings
    from simtrade_engine.runtime import event_bus

    backtest_routes.reset_backtest_state()
    event_bus.reset_event_bus()
    get_settings.cache_clear()
