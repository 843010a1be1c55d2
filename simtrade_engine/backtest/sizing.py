"""
Position sizing for backtesting.

Supports fixed dollar, fixed share and percent-of-equity sizing. Quantities are
whole shares except for FIXED_SHARES, which is taken literally.
"""

import math
from dataclasses import dataclass

from simtrade_engine.backtest.models import PositionSizing


@dataclass
class SizeResult:
    """Result of position sizing calculation."""

    quantity: float
    method_used: PositionSizing
    notional: float = 0.0
    rejection_reason: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.rejection_reason is None and self.quantity > 0


def calculate_position_size(
    method: PositionSizing,
    position_size: float,
    execution_price: float,
    equity: float,
) -> SizeResult:
    """
    Calculate order quantity for an entry.

    For FIXED_DOLLAR:
    - quantity = floor(position_size / execution_price)

    For FIXED_SHARES:
    - quantity = position_size

    For PERCENT_EQUITY (position_size is a percentage, 10 = 10%):
    - quantity = floor(equity * position_size / 100 / execution_price)

    Returns SizeResult; a zero quantity carries a rejection reason.
    """
    if execution_price <= 0:
        return SizeResult(
            quantity=0.0,
            method_used=method,
            rejection_reason="Execution price must be positive",
        )

    if method == PositionSizing.FIXED_SHARES:
        quantity = float(position_size)
    elif method == PositionSizing.PERCENT_EQUITY:
        budget = equity * position_size / 100.0
        quantity = float(math.floor(budget / execution_price))
    else:
        quantity = float(math.floor(position_size / execution_price))

    if quantity <= 0:
        return SizeResult(
            quantity=0.0,
            method_used=method,
            rejection_reason=(
                f"{method.value} sizing of {position_size} buys zero shares at {execution_price:.4f}"
            ),
        )

    return SizeResult(
        quantity=quantity,
        method_used=method,
        notional=quantity * execution_price,
    )
