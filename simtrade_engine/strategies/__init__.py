"""
Rule-based strategies and indicator helpers.
"""

from simtrade_engine.strategies.evaluator import RuleStrategyEvaluator, StrategyDefinition
from simtrade_engine.strategies.rules import (
    Comparator,
    Condition,
    IndicatorRef,
    LiteralValue,
    RuleGroup,
    evaluate_rule,
)

__all__ = [
    "Comparator",
    "Condition",
    "IndicatorRef",
    "LiteralValue",
    "RuleGroup",
    "RuleStrategyEvaluator",
    "StrategyDefinition",
    "evaluate_rule",
]
