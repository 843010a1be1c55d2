"""
Typed strategy rule trees.

A rule is either a Condition comparing an indicator to a literal or another
indicator, or a RuleGroup combining rules with AND/OR. Both are pydantic models
discriminated on ``kind`` so stored JSON validates straight into the tree.

Example:
    {"kind": "group", "logic": "AND", "rules": [
        {"kind": "condition",
         "left": {"kind": "indicator", "name": "RSI", "period": 14},
         "comparator": "<",
         "right": {"kind": "literal", "value": 30}}
    ]}
"""

import re
from collections.abc import Sequence
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from simtrade_engine.domain.bar import Bar
from simtrade_engine.strategies import indicators


class IndicatorName(str, Enum):
    """Indicators a rule can reference."""

    PRICE = "PRICE"
    VOLUME = "VOLUME"
    RSI = "RSI"
    SMA = "SMA"
    EMA = "EMA"
    MACD = "MACD"
    MACD_SIGNAL = "MACD_SIGNAL"
    MACD_HIST = "MACD_HIST"
    BB_UPPER = "BB_UPPER"
    BB_MIDDLE = "BB_MIDDLE"
    BB_LOWER = "BB_LOWER"


DEFAULT_PERIODS: dict[IndicatorName, int] = {
    IndicatorName.RSI: 14,
    IndicatorName.SMA: 50,
    IndicatorName.EMA: 50,
    IndicatorName.BB_UPPER: 20,
    IndicatorName.BB_MIDDLE: 20,
    IndicatorName.BB_LOWER: 20,
}

_MACD_FAMILY = {IndicatorName.MACD, IndicatorName.MACD_SIGNAL, IndicatorName.MACD_HIST}
_BB_FAMILY = {IndicatorName.BB_UPPER, IndicatorName.BB_MIDDLE, IndicatorName.BB_LOWER}
_LEGACY_NAME = re.compile(r"^(SMA|EMA|RSI)_(\d+)$")


class Comparator(str, Enum):
    """Condition comparators."""

    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    CROSS_ABOVE = "CROSS_ABOVE"
    CROSS_BELOW = "CROSS_BELOW"


class Logic(str, Enum):
    AND = "AND"
    OR = "OR"


# =============================================================================
# Rule Tree
# =============================================================================


class IndicatorRef(BaseModel):
    """Reference to an indicator series, e.g. SMA(50)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["indicator"] = "indicator"
    name: IndicatorName
    period: int | None = Field(default=None, ge=1, le=1000)

    @property
    def effective_period(self) -> int | None:
        return self.period or DEFAULT_PERIODS.get(self.name)

    @property
    def key(self) -> tuple[str, int | None]:
        return self.name.value, self.effective_period

    @classmethod
    def parse(cls, token: str) -> "IndicatorRef":
        """Parse names like ``RSI``, ``SMA_50`` or ``BB_UPPER``."""
        token = token.strip().upper()
        match = _LEGACY_NAME.match(token)
        if match:
            return cls(name=IndicatorName(match.group(1)), period=int(match.group(2)))
        return cls(name=IndicatorName(token))


class LiteralValue(BaseModel):
    """A constant operand."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["literal"] = "literal"
    value: float


Operand = Annotated[IndicatorRef | LiteralValue, Field(discriminator="kind")]


class Condition(BaseModel):
    """``left <comparator> right`` evaluated on the current bar."""

    kind: Literal["condition"] = "condition"
    left: IndicatorRef
    comparator: Comparator
    right: Operand


class RuleGroup(BaseModel):
    """AND/OR combination of conditions and nested groups."""

    kind: Literal["group"] = "group"
    logic: Logic = Logic.AND
    rules: list["Rule"] = Field(default_factory=list)


Rule = Annotated[Condition | RuleGroup, Field(discriminator="kind")]

RuleGroup.model_rebuild()


def parse_legacy_rules(payload: dict[str, Any]) -> RuleGroup:
    """
    Convert the flat ``{"rules": [{"indicator", "operator", "value"}]}`` format.

    All rules are ANDed. ``value`` may be a number or an indicator name;
    ``weight`` is ignored.
    """
    conditions: list[Condition] = []
    for raw in payload.get("rules", []):
        value = raw["value"]
        right: IndicatorRef | LiteralValue
        if isinstance(value, (int, float)):
            right = LiteralValue(value=float(value))
        else:
            right = IndicatorRef.parse(str(value))
        conditions.append(
            Condition(
                left=IndicatorRef.parse(str(raw["indicator"])),
                comparator=Comparator(raw["operator"]),
                right=right,
            )
        )
    return RuleGroup(logic=Logic.AND, rules=conditions)


# =============================================================================
# Evaluation
# =============================================================================


class IndicatorSnapshot:
    """
    Lazily computed indicator series over a causal bar history.

    Series are computed once per snapshot and cached by (name, period).
    """

    def __init__(self, bars: Sequence[Bar]):
        self._closes = [b.close for b in bars]
        self._volumes = [b.volume for b in bars]
        self._cache: dict[tuple[str, int | None], indicators.Series] = {}

    def __len__(self) -> int:
        return len(self._closes)

    def series(self, ref: IndicatorRef) -> indicators.Series:
        key = ref.key
        if key not in self._cache:
            self._cache[key] = self._compute(ref)
        return self._cache[key]

    def value(self, ref: IndicatorRef, offset: int = 0) -> float | None:
        """Indicator value ``offset`` bars before the current one."""
        idx = len(self._closes) - 1 - offset
        if idx < 0:
            return None
        return self.series(ref)[idx]

    def _compute(self, ref: IndicatorRef) -> indicators.Series:
        name = ref.name
        period = ref.effective_period
        if name == IndicatorName.PRICE:
            return list(self._closes)
        if name == IndicatorName.VOLUME:
            return list(self._volumes)
        if name == IndicatorName.RSI:
            return indicators.rsi(self._closes, period or 14)
        if name == IndicatorName.SMA:
            return indicators.sma(self._closes, period or 50)
        if name == IndicatorName.EMA:
            return indicators.ema(self._closes, period or 50)
        if name in _MACD_FAMILY:
            line, signal, hist = indicators.macd(self._closes)
            return {
                IndicatorName.MACD: line,
                IndicatorName.MACD_SIGNAL: signal,
                IndicatorName.MACD_HIST: hist,
            }[name]
        if name in _BB_FAMILY:
            upper, middle, lower = indicators.bollinger_bands(self._closes, period or 20)
            return {
                IndicatorName.BB_UPPER: upper,
                IndicatorName.BB_MIDDLE: middle,
                IndicatorName.BB_LOWER: lower,
            }[name]
        raise ValueError(f"Unsupported indicator: {name}")


def _operand_value(
    operand: IndicatorRef | LiteralValue,
    snapshot: IndicatorSnapshot,
    offset: int,
) -> float | None:
    if isinstance(operand, LiteralValue):
        return operand.value
    return snapshot.value(operand, offset)


def evaluate_condition(condition: Condition, snapshot: IndicatorSnapshot) -> bool:
    """Evaluate one condition. Indicators still warming up make it false."""
    left = snapshot.value(condition.left)
    right = _operand_value(condition.right, snapshot, 0)
    if left is None or right is None:
        return False

    comparator = condition.comparator
    if comparator == Comparator.GT:
        return left > right
    if comparator == Comparator.LT:
        return left < right
    if comparator == Comparator.GTE:
        return left >= right
    if comparator == Comparator.LTE:
        return left <= right

    prev_left = snapshot.value(condition.left, 1)
    prev_right = _operand_value(condition.right, snapshot, 1)
    if prev_left is None or prev_right is None:
        return False
    if comparator == Comparator.CROSS_ABOVE:
        return indicators.crossover(prev_left, prev_right, left, right)
    return indicators.crossunder(prev_left, prev_right, left, right)


def evaluate_rule(rule: Condition | RuleGroup, snapshot: IndicatorSnapshot) -> bool:
    """Evaluate a rule tree. An empty group is false."""
    if isinstance(rule, Condition):
        return evaluate_condition(rule, snapshot)
    if not rule.rules:
        return False
    results = (evaluate_rule(child, snapshot) for child in rule.rules)
    if rule.logic == Logic.AND:
        return all(results)
    return any(results)
