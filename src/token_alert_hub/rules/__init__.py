"""Rules layer - condition trees, evaluation and the rule engine."""

from token_alert_hub.rules.engine import EngineStats, RuleEngine, render_message
from token_alert_hub.rules.evaluator import compare, evaluate, get_field
from token_alert_hub.rules.models import (
    AlertType,
    ChangeCondition,
    CompositeCondition,
    Condition,
    Event,
    LeafCondition,
    MatchResult,
    PendingAlert,
    Priority,
    Rule,
    RuleValidationError,
    condition_from_dict,
    condition_to_dict,
)
from token_alert_hub.rules.store import InMemoryRuleStore, RetirementNotifier, RuleStore

__all__ = [
    "AlertType",
    "ChangeCondition",
    "CompositeCondition",
    "Condition",
    "EngineStats",
    "Event",
    "InMemoryRuleStore",
    "LeafCondition",
    "MatchResult",
    "PendingAlert",
    "Priority",
    "RetirementNotifier",
    "Rule",
    "RuleEngine",
    "RuleStore",
    "RuleValidationError",
    "compare",
    "condition_from_dict",
    "condition_to_dict",
    "evaluate",
    "get_field",
    "render_message",
]
