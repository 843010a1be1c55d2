"""
Persistence interfaces.

Defines the contracts for storing run records, fills, equity points and alerts,
and for looking up strategy definitions.
"""

from abc import ABC, abstractmethod

from simtrade_engine.backtest.models import (
    Alert,
    BacktestRun,
    EquityPoint,
    RunStatus,
    Trade,
    TradeSide,
)
from simtrade_engine.strategies.evaluator import StrategyDefinition


class StrategyStore(ABC):
    """Read access to stored strategies."""

    @abstractmethod
    async def get_strategy(self, strategy_id: str) -> StrategyDefinition | None:
        """Return the strategy, or None if it does not exist."""


class BacktestStore(ABC):
    """
    Storage for backtest runs.

    Trades and equity points are append-only. Implementations must refuse to
    overwrite a run whose stored status is terminal.
    """

    # =========================================================================
    # Run records
    # =========================================================================

    @abstractmethod
    async def create_run(self, run: BacktestRun) -> None:
        """Persist a new run record."""

    @abstractmethod
    async def update_run(self, run: BacktestRun) -> None:
        """
        Replace a run record.

        Raises:
            RunStateError: The stored record is already terminal.
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> BacktestRun | None:
        """Return a run record, or None if unknown."""

    @abstractmethod
    async def list_runs(
        self,
        strategy_id: str | None = None,
        symbol: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[BacktestRun]:
        """List runs, newest first."""

    # =========================================================================
    # Append-only history
    # =========================================================================

    @abstractmethod
    async def append_trades(self, run_id: str, trades: list[Trade]) -> None:
        """Append fills in execution order."""

    @abstractmethod
    async def append_equity_points(self, run_id: str, points: list[EquityPoint]) -> None:
        """Append equity points in timestamp order."""

    @abstractmethod
    async def append_alerts(self, run_id: str, alerts: list[Alert]) -> None:
        """Append alerts."""

    @abstractmethod
    async def list_trades(
        self,
        run_id: str,
        side: TradeSide | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Trade], int]:
        """
        Page through a run's fills in execution order.

        Returns:
            (page, total matching the filter)
        """

    @abstractmethod
    async def list_equity_points(self, run_id: str) -> list[EquityPoint]:
        """Return the full equity curve."""

    @abstractmethod
    async def list_alerts(self, run_id: str) -> list[Alert]:
        """Return all alerts for a run."""

    async def finalize_run(self, run_id: str) -> None:
        """Hook called once a run reaches a terminal state. No-op by default."""
        return None
