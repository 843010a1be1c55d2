"""
Rule-based strategy evaluation.

StrategyDefinition is the stored form of a strategy; RuleStrategyEvaluator
turns its entry/exit rule trees into signals bar by bar.
"""

from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field, field_validator

from simtrade_engine.backtest.errors import SignalEvaluationError
from simtrade_engine.backtest.models import Signal
from simtrade_engine.backtest.portfolio import RiskLimits
from simtrade_engine.domain.bar import Bar, TimeHorizon
from simtrade_engine.interfaces.strategy import StrategyEvaluator
from simtrade_engine.logging import get_logger
from simtrade_engine.strategies.rules import (
    IndicatorSnapshot,
    RuleGroup,
    evaluate_rule,
    parse_legacy_rules,
)

logger = get_logger(__name__)

DEFAULT_LOOKBACK_BARS = 500


class StrategyDefinition(BaseModel):
    """A stored strategy: rule trees plus risk exits in percent."""

    id: str = Field(..., min_length=1)
    name: str = ""
    time_horizon: TimeHorizon = TimeHorizon.SWING
    entry_rules: RuleGroup = Field(default_factory=RuleGroup)
    exit_rules: RuleGroup = Field(default_factory=RuleGroup)
    stop_loss_pct: float | None = Field(default=None, gt=0, le=100)
    take_profit_pct: float | None = Field(default=None, gt=0)

    @field_validator("entry_rules", "exit_rules", mode="before")
    @classmethod
    def accept_legacy_rules(cls, v: Any) -> Any:
        """Accept the flat ``{"rules": [...]}`` format alongside typed trees."""
        if isinstance(v, dict) and "kind" not in v and "rules" in v:
            return parse_legacy_rules(v)
        return v

    @property
    def risk_limits(self) -> RiskLimits:
        return RiskLimits(stop_loss_pct=self.stop_loss_pct, take_profit_pct=self.take_profit_pct)


class RuleStrategyEvaluator(StrategyEvaluator):
    """
    Evaluates a StrategyDefinition's rules.

    Flat: entry rules true -> BUY. Long: exit rules true -> SELL.
    Otherwise HOLD.
    """

    def __init__(
        self,
        strategy: StrategyDefinition,
        lookback_bars: int = DEFAULT_LOOKBACK_BARS,
    ):
        self.strategy = strategy
        self.lookback_bars = lookback_bars

    async def evaluate(self, bars: Sequence[Bar], position_open: bool) -> Signal:
        if not bars:
            return Signal.HOLD

        window = bars[-self.lookback_bars :]
        snapshot = IndicatorSnapshot(window)
        rules = self.strategy.exit_rules if position_open else self.strategy.entry_rules

        try:
            triggered = evaluate_rule(rules, snapshot)
        except (ArithmeticError, ValueError) as e:
            raise SignalEvaluationError(
                f"Strategy {self.strategy.id} failed at {bars[-1].timestamp.isoformat()}: {e}"
            ) from e

        if not triggered:
            return Signal.HOLD
        return Signal.SELL if position_open else Signal.BUY
