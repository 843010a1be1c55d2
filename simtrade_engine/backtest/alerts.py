"""
Post-run performance alerts.

Checks a completed run's metrics against fixed thresholds. Metrics that are
None (too few trades, no losses) never raise an alert.
"""

from simtrade_engine.backtest.models import Alert, AlertSeverity, AlertType, MetricsSummary

WIN_RATE_THRESHOLD = 50.0
WIN_RATE_CRITICAL = 45.0
MAX_DRAWDOWN_THRESHOLD = -15.0
SHARPE_THRESHOLD = 1.0
PROFIT_FACTOR_THRESHOLD = 1.5


def check_performance_alerts(run_id: str, metrics: MetricsSummary) -> list[Alert]:
    """Build the alerts a finished run's metrics warrant."""
    alerts: list[Alert] = []

    if metrics.win_rate is not None and metrics.win_rate < WIN_RATE_THRESHOLD:
        severity = (
            AlertSeverity.HIGH if metrics.win_rate < WIN_RATE_CRITICAL else AlertSeverity.MEDIUM
        )
        alerts.append(
            Alert(
                run_id=run_id,
                alert_type=AlertType.WIN_RATE_DROP,
                severity=severity,
                message=f"Win rate {metrics.win_rate:.1f}% is below {WIN_RATE_THRESHOLD:.0f}%",
                threshold=WIN_RATE_THRESHOLD,
                actual_value=metrics.win_rate,
            )
        )

    if metrics.max_drawdown is not None and metrics.max_drawdown < MAX_DRAWDOWN_THRESHOLD:
        alerts.append(
            Alert(
                run_id=run_id,
                alert_type=AlertType.MAX_DRAWDOWN_BREACH,
                severity=AlertSeverity.HIGH,
                message=(
                    f"Max drawdown {metrics.max_drawdown:.1f}% breached "
                    f"{MAX_DRAWDOWN_THRESHOLD:.0f}%"
                ),
                threshold=MAX_DRAWDOWN_THRESHOLD,
                actual_value=metrics.max_drawdown,
            )
        )

    if metrics.sharpe_ratio is not None and metrics.sharpe_ratio < SHARPE_THRESHOLD:
        alerts.append(
            Alert(
                run_id=run_id,
                alert_type=AlertType.SHARPE_DECLINE,
                severity=AlertSeverity.MEDIUM,
                message=f"Sharpe ratio {metrics.sharpe_ratio:.2f} is below {SHARPE_THRESHOLD}",
                threshold=SHARPE_THRESHOLD,
                actual_value=metrics.sharpe_ratio,
            )
        )

    if metrics.profit_factor is not None and metrics.profit_factor < PROFIT_FACTOR_THRESHOLD:
        alerts.append(
            Alert(
                run_id=run_id,
                alert_type=AlertType.PROFIT_FACTOR_LOW,
                severity=AlertSeverity.MEDIUM,
                message=(
                    f"Profit factor {metrics.profit_factor:.2f} is below "
                    f"{PROFIT_FACTOR_THRESHOLD}"
                ),
                threshold=PROFIT_FACTOR_THRESHOLD,
                actual_value=metrics.profit_factor,
            )
        )

    return alerts
