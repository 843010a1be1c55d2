"""
Performance metrics calculation for backtesting.

Pure functions over a run's fills and equity curve. Undefined ratios
(no closed trades, no losses, zero volatility) are reported as None rather
than as sentinels, and NaN/inf never leave this module.
"""

import math
from collections.abc import Sequence
from datetime import datetime

from simtrade_engine.backtest.models import EquityPoint, MetricsSummary, Trade, TradeSide
from simtrade_engine.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PERIODS_PER_YEAR = 252


def _finite_or_none(value: float | None) -> float | None:
    if value is None or math.isnan(value) or math.isinf(value):
        return None
    return value


def calculate_returns(equity_curve: Sequence[EquityPoint]) -> list[float]:
    """Calculate bar-over-bar returns from the equity curve."""
    if len(equity_curve) < 2:
        return []

    returns = []
    for i in range(1, len(equity_curve)):
        prev_equity = equity_curve[i - 1].total_equity
        curr_equity = equity_curve[i].total_equity
        if prev_equity > 0:
            returns.append((curr_equity - prev_equity) / prev_equity)
        else:
            returns.append(0.0)

    return returns


def calculate_sharpe_ratio(
    returns: Sequence[float],
    risk_free_rate: float = 0.0,
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> float | None:
    """
    Calculate annualized Sharpe ratio.

    Sharpe = (mean_return - risk_free) / std_dev * sqrt(periods_per_year)
    Uses the sample standard deviation. None when volatility is zero.
    """
    if len(returns) < 2:
        return None

    mean_ret = sum(returns) / len(returns)
    excess_ret = mean_ret - (risk_free_rate / periods_per_year)

    variance = sum((r - mean_ret) ** 2 for r in returns) / (len(returns) - 1)
    std_dev = math.sqrt(variance) if variance > 0 else 0.0
    if std_dev <= 0:
        return None

    return _finite_or_none((excess_ret / std_dev) * math.sqrt(periods_per_year))


def calculate_sortino_ratio(
    returns: Sequence[float],
    risk_free_rate: float = 0.0,
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> float | None:
    """
    Calculate annualized Sortino ratio.

    Sortino = (mean_return - risk_free) / downside_dev * sqrt(periods_per_year)
    Downside deviation is the root mean square of returns below the per-period
    target, taken over all periods. None when there is no downside.
    """
    if len(returns) < 2:
        return None

    target = risk_free_rate / periods_per_year
    mean_ret = sum(returns) / len(returns)
    excess_ret = mean_ret - target

    downside_sq = [min(r - target, 0.0) ** 2 for r in returns]
    downside_dev = math.sqrt(sum(downside_sq) / len(returns))
    if downside_dev <= 0:
        return None

    return _finite_or_none((excess_ret / downside_dev) * math.sqrt(periods_per_year))


def calculate_max_drawdown(
    equity_curve: Sequence[EquityPoint],
) -> tuple[float | None, datetime | None]:
    """
    Find the deepest drawdown on the curve.

    Returns:
        (max_drawdown_pct, timestamp). The percentage is <= 0. An empty curve
        gives (None, None); a curve that never dips gives (0.0, None).
    """
    if not equity_curve:
        return None, None

    worst = 0.0
    worst_at: datetime | None = None
    for point in equity_curve:
        if point.drawdown_pct < worst:
            worst = point.drawdown_pct
            worst_at = point.timestamp

    return worst, worst_at


def calculate_trade_metrics(trades: Sequence[Trade]) -> dict[str, float | int | None]:
    """
    Calculate trading metrics from closed (SELL) trades.

    Every ratio is None when there are no closed trades. Profit factor is
    None when there are no losing trades.
    """
    closed = [t for t in trades if t.side == TradeSide.SELL and t.realized_pl is not None]
    total_trades = len(closed)

    if total_trades == 0:
        return {
            "total_trades": 0,
            "winning_trades": 0,
            "losing_trades": 0,
            "win_rate": None,
            "profit_factor": None,
            "expectancy": None,
            "avg_win_pct": None,
            "avg_loss_pct": None,
        }

    wins = [t for t in closed if t.realized_pl > 0]
    losses = [t for t in closed if t.realized_pl < 0]

    gross_profit = sum(t.realized_pl for t in wins)
    gross_loss = abs(sum(t.realized_pl for t in losses))

    profit_factor = gross_profit / gross_loss if gross_loss > 0 else None
    expectancy = sum(t.realized_pl for t in closed) / total_trades

    win_pcts = [t.realized_pl_pct for t in wins if t.realized_pl_pct is not None]
    loss_pcts = [t.realized_pl_pct for t in losses if t.realized_pl_pct is not None]

    return {
        "total_trades": total_trades,
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": len(wins) / total_trades * 100.0,
        "profit_factor": _finite_or_none(profit_factor),
        "expectancy": _finite_or_none(expectancy),
        "avg_win_pct": sum(win_pcts) / len(win_pcts) if win_pcts else None,
        "avg_loss_pct": sum(loss_pcts) / len(loss_pcts) if loss_pcts else None,
    }


def compute_metrics(
    trades: Sequence[Trade],
    equity_curve: Sequence[EquityPoint],
    initial_cash: float,
    final_cash: float | None = None,
    final_equity: float | None = None,
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
    risk_free_rate: float = 0.0,
) -> MetricsSummary:
    """
    Compute the complete metrics summary for a run.

    Args:
        trades: All fills of the run, in execution order
        equity_curve: One equity point per processed bar
        initial_cash: Starting capital
        final_cash: Cash after any end-of-data liquidation (defaults to last point)
        final_equity: Equity after any end-of-data liquidation (defaults to last point)
        periods_per_year: Bars per year for annualizing Sharpe/Sortino
        risk_free_rate: Annual risk-free rate

    Returns:
        MetricsSummary; ratios are None where undefined
    """
    last = equity_curve[-1] if equity_curve else None
    if final_equity is None:
        final_equity = last.total_equity if last else initial_cash
    if final_cash is None:
        final_cash = last.cash if last else initial_cash

    total_return = final_equity - initial_cash
    total_return_pct = total_return / initial_cash * 100.0 if initial_cash > 0 else None

    trade_metrics = calculate_trade_metrics(trades)
    max_dd, max_dd_at = calculate_max_drawdown(equity_curve)

    sharpe: float | None = None
    sortino: float | None = None
    if trade_metrics["total_trades"]:
        returns = calculate_returns(equity_curve)
        sharpe = calculate_sharpe_ratio(returns, risk_free_rate, periods_per_year)
        sortino = calculate_sortino_ratio(returns, risk_free_rate, periods_per_year)

    logger.debug(
        "Metrics: trades=%s return=%.2f sharpe=%s max_dd=%s",
        trade_metrics["total_trades"],
        total_return,
        sharpe,
        max_dd,
    )

    return MetricsSummary(
        final_cash=final_cash,
        final_equity=final_equity,
        total_return=total_return,
        total_return_pct=_finite_or_none(total_return_pct),
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        max_drawdown=max_dd,
        max_drawdown_date=max_dd_at,
        win_rate=trade_metrics["win_rate"],
        profit_factor=trade_metrics["profit_factor"],
        expectancy=trade_metrics["expectancy"],
        avg_win_pct=trade_metrics["avg_win_pct"],
        avg_loss_pct=trade_metrics["avg_loss_pct"],
        total_trades=trade_metrics["total_trades"],
        winning_trades=trade_metrics["winning_trades"],
        losing_trades=trade_metrics["losing_trades"],
    )
