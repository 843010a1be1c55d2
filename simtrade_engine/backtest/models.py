"""
Backtest data models.

Defines contracts for backtest configs, run records, trades, equity points,
alerts and metrics.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from simtrade_engine.backtest.errors import RunStateError
from simtrade_engine.domain.bar import BarInterval, TimeHorizon


class RunStatus(str, Enum):
    """Backtest run lifecycle status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


_ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
}


class PositionSizing(str, Enum):
    """Position sizing methods."""

    FIXED_DOLLAR = "FIXED_DOLLAR"
    FIXED_SHARES = "FIXED_SHARES"
    PERCENT_EQUITY = "PERCENT_EQUITY"


class Signal(str, Enum):
    """Strategy decision for a single bar."""

    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class TradeSide(str, Enum):
    """Fill side."""

    BUY = "BUY"
    SELL = "SELL"


class ExitReason(str, Enum):
    """Why a position was closed."""

    SIGNAL = "SIGNAL"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    DATA_END = "DATA_END"


class AlertSeverity(str, Enum):
    """Alert severity."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AlertType(str, Enum):
    """Alert categories raised during and after a run."""

    INSUFFICIENT_CASH = "INSUFFICIENT_CASH"
    ZERO_QUANTITY = "ZERO_QUANTITY"
    SIGNAL_ERROR = "SIGNAL_ERROR"
    WIN_RATE_DROP = "WIN_RATE_DROP"
    MAX_DRAWDOWN_BREACH = "MAX_DRAWDOWN_BREACH"
    SHARPE_DECLINE = "SHARPE_DECLINE"
    PROFIT_FACTOR_LOW = "PROFIT_FACTOR_LOW"


# =============================================================================
# Request Models
# =============================================================================


class BacktestConfig(BaseModel):
    """Immutable description of a single backtest run."""

    model_config = ConfigDict(frozen=True)

    strategy_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("strategy_id", "strategyId"),
    )
    symbol: str = Field(..., min_length=1, description="Instrument symbol")
    time_horizon: TimeHorizon = Field(
        default=TimeHorizon.SWING,
        validation_alias=AliasChoices("time_horizon", "timeHorizon"),
    )
    start_date: datetime = Field(
        ...,
        description="First bar timestamp to replay",
        validation_alias=AliasChoices("start_date", "start", "startDate"),
    )
    end_date: datetime = Field(
        ...,
        description="Last bar timestamp to replay",
        validation_alias=AliasChoices("end_date", "end", "endDate"),
    )
    initial_cash: float = Field(
        default=10000.0,
        gt=0,
        description="Starting capital",
        validation_alias=AliasChoices("initial_cash", "initial_capital", "initialCash"),
    )
    position_sizing: PositionSizing = Field(
        default=PositionSizing.FIXED_DOLLAR,
        validation_alias=AliasChoices("position_sizing", "positionSizing"),
    )
    position_size: float = Field(
        default=1000.0,
        gt=0,
        description="Dollars, shares, or percent of equity depending on position_sizing",
        validation_alias=AliasChoices("position_size", "positionSize"),
    )
    slippage_bps: float = Field(
        default=10.0,
        ge=0,
        le=10_000,
        validation_alias=AliasChoices("slippage_bps", "slippageBps"),
    )
    commission_per_trade: float = Field(
        default=1.0,
        ge=0,
        validation_alias=AliasChoices("commission_per_trade", "commission", "commissionPerTrade"),
    )
    interval: BarInterval | None = Field(
        default=None,
        description="Override for the bar interval implied by time_horizon",
    )

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Naive datetimes are taken to be UTC."""
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)

    @property
    def bar_interval(self) -> BarInterval:
        return self.interval or self.time_horizon.default_interval


# =============================================================================
# Result Models
# =============================================================================


class Trade(BaseModel):
    """A single fill. BUY opens the position, SELL closes it."""

    trade_id: UUID = Field(default_factory=uuid4)
    run_id: str
    symbol: str
    execution_bar: datetime
    side: TradeSide
    quantity: float
    target_price: float = Field(description="Bar close the fill was priced from")
    entry_price: float | None = None
    executed_price: float
    gross_amount: float
    net_amount: float
    commission: float
    slippage: float = Field(description="Slippage cost in currency (per-share amount x quantity)")
    realized_pl: float | None = None
    realized_pl_pct: float | None = None
    holding_period: int | None = Field(default=None, description="Bars held")
    exit_reason: ExitReason | None = None

    @property
    def is_closed(self) -> bool:
        return self.side == TradeSide.SELL


class EquityPoint(BaseModel):
    """Single point on the equity curve."""

    run_id: str
    timestamp: datetime
    cash: float
    stock_value: float
    total_equity: float
    high_water_mark: float
    drawdown: float = Field(description="Currency distance below the high-water mark (<= 0)")
    drawdown_pct: float = Field(description="Percent distance below the high-water mark (<= 0)")


class Alert(BaseModel):
    """Operational or performance alert attached to a run."""

    run_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    threshold: float | None = None
    actual_value: float | None = None


class MetricsSummary(BaseModel):
    """Performance metrics summary. Ratios are None when undefined."""

    final_cash: float
    final_equity: float
    total_return: float
    total_return_pct: float | None = None

    sharpe_ratio: float | None = None
    sortino_ratio: float | None = None
    max_drawdown: float | None = Field(default=None, description="Most negative drawdown_pct")
    max_drawdown_date: datetime | None = None

    win_rate: float | None = Field(default=None, description="Winning closed trades, percent")
    profit_factor: float | None = None
    expectancy: float | None = Field(default=None, description="Mean realized P&L per closed trade")
    avg_win_pct: float | None = None
    avg_loss_pct: float | None = None

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0


class BacktestRun(BaseModel):
    """Run record: config snapshot, lifecycle status and final metrics."""

    id: str
    status: RunStatus = RunStatus.PENDING
    config: BacktestConfig
    bars_processed: int = 0
    total_bars: int = 0
    execution_time_s: float | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metrics: MetricsSummary | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, status: RunStatus) -> RunStatus:
        """
        Move the run to a new status.

        Returns:
            The previous status

        Raises:
            RunStateError: If the run is terminal or the transition goes backwards
        """
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} is {self.status.value} and cannot change")
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise RunStateError(
                f"Illegal transition for run {self.id}: {self.status.value} -> {status.value}"
            )
        previous = self.status
        self.status = status
        now = datetime.now(UTC)
        if status == RunStatus.RUNNING:
            self.started_at = now
        elif status.is_terminal:
            self.completed_at = now
        return previous
