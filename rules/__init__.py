"""
Rules Engine Package

Provides versioned rule storage, condition-tree evaluation and the
orchestration that turns an event into the actions of matching rules.
"""

from .conditions import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    evaluate,
    parse_condition,
)
from .models import Action, ActionType, Rule, RuleEvaluation, TriggeredAction
from .rule_engine import RuleEngine
from .store import RuleStore

__all__ = [
    "RuleEngine",
    "RuleStore",
    "Rule",
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "LogicalOperator",
    "Action",
    "ActionType",
    "RuleEvaluation",
    "TriggeredAction",
    "evaluate",
    "parse_condition",
]
