"""
Virtual portfolio for backtesting.

Tracks cash, the single open position, equity and drawdown for one run, and
turns signals into fills. Long-only, single-lot, average-cost accounting.

Per bar, in order:
1. Stop-loss / take-profit check on the open position (pre-empts the signal)
2. Signal handling (BUY when flat, SELL when long, otherwise nothing)
3. Mark to market and append one equity point

Invariants:
- cash + stock_value == total_equity at every equity point
- high_water_mark never decreases
- drawdown_pct <= 0, and == 0 whenever equity is at the high-water mark
"""

from dataclasses import dataclass, field
from datetime import datetime

from simtrade_engine.backtest.models import (
    Alert,
    AlertSeverity,
    AlertType,
    BacktestConfig,
    EquityPoint,
    ExitReason,
    Signal,
    Trade,
    TradeSide,
)
from simtrade_engine.backtest.sizing import calculate_position_size
from simtrade_engine.domain.bar import Bar
from simtrade_engine.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Position:
    """The open long position."""

    symbol: str
    quantity: float
    avg_entry_price: float
    total_cost: float
    entry_commission: float
    entry_bar_index: int
    entry_time: datetime

    def market_value(self, price: float) -> float:
        return self.quantity * price

    def unrealized_pl_pct(self, price: float) -> float:
        """Unrealized P&L as a percent of total cost (commission included)."""
        if self.total_cost <= 0:
            return 0.0
        return (self.market_value(price) - self.total_cost) / self.total_cost * 100.0


@dataclass
class RiskLimits:
    """Per-strategy exit thresholds, in percent. None disables the check."""

    stop_loss_pct: float | None = None
    take_profit_pct: float | None = None


@dataclass
class StepResult:
    """Everything one bar produced."""

    equity_point: EquityPoint
    trades: list[Trade] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)


class VirtualPortfolioEngine:
    """
    Per-run portfolio state machine.

    Owned by exactly one run task; not safe to share between runs.
    """

    def __init__(
        self,
        run_id: str,
        config: BacktestConfig,
        risk: RiskLimits | None = None,
    ):
        self.run_id = run_id
        self.config = config
        self.risk = risk or RiskLimits()

        self.cash: float = config.initial_cash
        self.position: Position | None = None
        self.high_water_mark: float = config.initial_cash
        self.bar_index: int = -1

        self.trades: list[Trade] = []
        self.equity_curve: list[EquityPoint] = []
        self.alerts: list[Alert] = []

        self._last_close: float | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def has_position(self) -> bool:
        return self.position is not None

    @property
    def stock_value(self) -> float:
        if self.position is None or self._last_close is None:
            return 0.0
        return self.position.market_value(self._last_close)

    @property
    def total_equity(self) -> float:
        return self.cash + self.stock_value

    @property
    def closed_trades(self) -> list[Trade]:
        return [t for t in self.trades if t.side == TradeSide.SELL]

    # =========================================================================
    # Bar processing
    # =========================================================================

    def step(self, bar: Bar, signal: Signal) -> StepResult:
        """
        Advance the portfolio by one bar.

        Args:
            bar: Current bar (timestamps must be strictly increasing)
            signal: Strategy decision for this bar

        Returns:
            StepResult with the equity point plus any fills and alerts
        """
        self.bar_index += 1
        self._last_close = bar.close
        trades: list[Trade] = []
        alerts: list[Alert] = []

        exit_reason = self._check_risk_exit(bar)
        if exit_reason is not None:
            trades.append(self._sell(bar, exit_reason))
        elif signal == Signal.BUY and self.position is None:
            trade, alert = self._buy(bar)
            if trade is not None:
                trades.append(trade)
            if alert is not None:
                alerts.append(alert)
        elif signal == Signal.SELL and self.position is not None:
            trades.append(self._sell(bar, ExitReason.SIGNAL))

        point = self._mark_to_market(bar)

        self.alerts.extend(alerts)
        return StepResult(equity_point=point, trades=trades, alerts=alerts)

    def liquidate(self, bar: Bar, reason: ExitReason = ExitReason.DATA_END) -> Trade | None:
        """
        Close the open position at the bar's close without recording an equity point.

        Returns:
            The closing trade, or None when flat
        """
        if self.position is None:
            return None
        self._last_close = bar.close
        return self._sell(bar, reason)

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_risk_exit(self, bar: Bar) -> ExitReason | None:
        if self.position is None:
            return None
        pl_pct = self.position.unrealized_pl_pct(bar.close)
        if self.risk.stop_loss_pct is not None and pl_pct <= -self.risk.stop_loss_pct:
            logger.debug("Stop loss hit at %s: %.2f%%", bar.timestamp, pl_pct)
            return ExitReason.STOP_LOSS
        if self.risk.take_profit_pct is not None and pl_pct >= self.risk.take_profit_pct:
            logger.debug("Take profit hit at %s: %.2f%%", bar.timestamp, pl_pct)
            return ExitReason.TAKE_PROFIT
        return None

    def _buy(self, bar: Bar) -> tuple[Trade | None, Alert | None]:
        slippage_per_share = bar.close * self.config.slippage_bps / 10_000
        executed = bar.close + slippage_per_share
        commission = self.config.commission_per_trade

        size = calculate_position_size(
            self.config.position_sizing,
            self.config.position_size,
            executed,
            self.total_equity,
        )
        if not size.is_valid:
            return None, self._alert(
                AlertType.ZERO_QUANTITY,
                AlertSeverity.LOW,
                f"Skipped BUY at {bar.timestamp.isoformat()}: {size.rejection_reason}",
                bar.timestamp,
            )

        quantity = size.quantity
        gross = quantity * executed
        required = gross + commission
        if required > self.cash:
            return None, self._alert(
                AlertType.INSUFFICIENT_CASH,
                AlertSeverity.MEDIUM,
                (
                    f"Skipped BUY at {bar.timestamp.isoformat()}: needs {required:.2f}, "
                    f"cash {self.cash:.2f}"
                ),
                bar.timestamp,
                threshold=required,
                actual_value=self.cash,
            )

        self.cash -= required
        self.position = Position(
            symbol=self.config.symbol,
            quantity=quantity,
            avg_entry_price=executed,
            total_cost=required,
            entry_commission=commission,
            entry_bar_index=self.bar_index,
            entry_time=bar.timestamp,
        )
        trade = Trade(
            run_id=self.run_id,
            symbol=self.config.symbol,
            execution_bar=bar.timestamp,
            side=TradeSide.BUY,
            quantity=quantity,
            target_price=bar.close,
            entry_price=executed,
            executed_price=executed,
            gross_amount=gross,
            net_amount=required,
            commission=commission,
            slippage=slippage_per_share * quantity,
        )
        self.trades.append(trade)
        logger.debug("BUY %s x %.4f @ %.4f", self.config.symbol, quantity, executed)
        return trade, None

    def _sell(self, bar: Bar, reason: ExitReason) -> Trade:
        position = self.position
        assert position is not None

        slippage_per_share = bar.close * self.config.slippage_bps / 10_000
        executed = bar.close - slippage_per_share
        commission = self.config.commission_per_trade
        gross = position.quantity * executed
        net = gross - commission

        total_commission = position.entry_commission + commission
        realized_pl = (executed - position.avg_entry_price) * position.quantity - total_commission
        realized_pl_pct = (
            realized_pl / position.total_cost * 100.0 if position.total_cost > 0 else None
        )

        self.cash += net
        self.position = None

        trade = Trade(
            run_id=self.run_id,
            symbol=position.symbol,
            execution_bar=bar.timestamp,
            side=TradeSide.SELL,
            quantity=position.quantity,
            target_price=bar.close,
            entry_price=position.avg_entry_price,
            executed_price=executed,
            gross_amount=gross,
            net_amount=net,
            commission=commission,
            slippage=slippage_per_share * position.quantity,
            realized_pl=realized_pl,
            realized_pl_pct=realized_pl_pct,
            holding_period=self.bar_index - position.entry_bar_index,
            exit_reason=reason,
        )
        self.trades.append(trade)
        logger.debug(
            "SELL %s x %.4f @ %.4f (%s) pl=%.2f",
            position.symbol,
            position.quantity,
            executed,
            reason.value,
            realized_pl,
        )
        return trade

    def _mark_to_market(self, bar: Bar) -> EquityPoint:
        stock_value = self.position.market_value(bar.close) if self.position else 0.0
        total_equity = self.cash + stock_value
        if total_equity >= self.high_water_mark:
            self.high_water_mark = total_equity
            drawdown = 0.0
            drawdown_pct = 0.0
        else:
            drawdown = total_equity - self.high_water_mark
            drawdown_pct = (
                drawdown / self.high_water_mark * 100.0 if self.high_water_mark > 0 else 0.0
            )

        point = EquityPoint(
            run_id=self.run_id,
            timestamp=bar.timestamp,
            cash=self.cash,
            stock_value=stock_value,
            total_equity=total_equity,
            high_water_mark=self.high_water_mark,
            drawdown=drawdown,
            drawdown_pct=drawdown_pct,
        )
        self.equity_curve.append(point)
        return point

    def _alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        timestamp: datetime,
        threshold: float | None = None,
        actual_value: float | None = None,
    ) -> Alert:
        logger.info("Run alert %s: %s", alert_type.value, message)
        return Alert(
            run_id=self.run_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            timestamp=timestamp,
            threshold=threshold,
            actual_value=actual_value,
        )
