"""Condition evaluation against event snapshots.

Evaluation is a pure function of (event, condition): it reads nothing but its
arguments, and anything that cannot be evaluated (missing fields, wrong types,
malformed nodes) is a non-match rather than an error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from decimal import Decimal
from typing import Any

from token_alert_hub.rules.models import (
    TIMEFRAME_SECONDS,
    ChangeCondition,
    CompositeCondition,
    Condition,
    Event,
    LeafCondition,
    MatchResult,
)

logger = logging.getLogger(__name__)

NO_MATCH = MatchResult(matched=False)

_MISSING = object()


def get_field(data: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path in nested mappings, returning _MISSING if absent."""
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    if value is None:
        return _MISSING
    return value


def _as_number(value: Any) -> float | None:
    """Coerce ints, floats, Decimals and numeric strings; None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float | Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a leaf operator. Incompatible operands compare as False."""
    if operator in (">=", "<=", ">", "<"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        if operator == ">=":
            return left >= right
        if operator == "<=":
            return left <= right
        if operator == ">":
            return left > right
        return left < right

    if operator in ("==", "!="):
        left, right = _as_number(actual), _as_number(expected)
        if left is not None and right is not None and not isinstance(actual, str):
            equal = left == right
        else:
            equal = actual == expected
        return equal if operator == "==" else not equal

    if operator in ("in", "not_in"):
        if not isinstance(expected, list | tuple | set | frozenset):
            return False
        try:
            found = actual in expected
        except TypeError:
            return False
        return found if operator == "in" else not found

    if operator in ("contains", "not_contains"):
        if isinstance(actual, str):
            found = str(expected).lower() in actual.lower()
        elif isinstance(actual, list | tuple | set | frozenset):
            found = expected in actual
        else:
            return False
        return found if operator == "contains" else not found

    return False


def describe_condition(condition: Condition) -> str:
    """Render a condition tree as a compact string."""
    if isinstance(condition, CompositeCondition):
        if condition.operator == "NOT" and condition.children:
            return f"NOT ({describe_condition(condition.children[0])})"
        joiner = f" {condition.operator} "
        return "(" + joiner.join(describe_condition(c) for c in condition.children) + ")"
    return condition.describe()


def _evaluate_leaf(event: Event, condition: LeafCondition) -> MatchResult:
    actual = get_field(event.data, condition.field)
    if actual is _MISSING:
        return NO_MATCH
    if compare(actual, condition.operator, condition.value):
        return MatchResult(matched=True, reasons=(condition.describe(),))
    return NO_MATCH


def _evaluate_change(event: Event, condition: ChangeCondition) -> MatchResult:
    if not event.history:
        return NO_MATCH

    seconds = TIMEFRAME_SECONDS.get(condition.timeframe)
    if seconds is None:
        return NO_MATCH
    target = event.timestamp - timedelta(seconds=seconds)

    # Closest snapshot to the target time; earliest wins on ties
    closest = min(
        sorted(event.history.items(), key=lambda item: item[0]),
        key=lambda item: abs((item[0] - target).total_seconds()),
    )[1]

    current = _as_number(get_field(event.data, condition.field))
    past = _as_number(get_field(closest, condition.field))
    if current is None or past is None:
        return NO_MATCH

    if condition.mode == "change":
        if compare(current - past, condition.operator, condition.threshold):
            return MatchResult(matched=True, reasons=(condition.describe(),))
        return NO_MATCH

    if past == 0:
        return NO_MATCH
    change = (current - past) / past * 100
    if condition.mode == "percent_increase":
        matched = change >= condition.threshold
    elif condition.mode == "percent_decrease":
        matched = change <= -condition.threshold
    elif condition.mode == "percent_change_abs":
        matched = abs(change) >= condition.threshold
    else:
        matched = False

    if matched:
        return MatchResult(matched=True, reasons=(condition.describe(),))
    return NO_MATCH


def _evaluate_composite(event: Event, condition: CompositeCondition) -> MatchResult:
    if condition.operator == "AND":
        if not condition.children:
            return NO_MATCH
        reasons: list[str] = []
        for child in condition.children:
            result = _evaluate(event, child)
            if not result.matched:
                return NO_MATCH
            reasons.extend(result.reasons)
        return MatchResult(matched=True, reasons=tuple(reasons))

    if condition.operator == "OR":
        for child in condition.children:
            result = _evaluate(event, child)
            if result.matched:
                return result
        return NO_MATCH

    if condition.operator == "NOT":
        if len(condition.children) != 1:
            return NO_MATCH
        child = condition.children[0]
        if _evaluate(event, child).matched:
            return NO_MATCH
        return MatchResult(matched=True, reasons=(f"NOT ({describe_condition(child)})",))

    return NO_MATCH


def _evaluate(event: Event, condition: Condition) -> MatchResult:
    if isinstance(condition, LeafCondition):
        return _evaluate_leaf(event, condition)
    if isinstance(condition, ChangeCondition):
        return _evaluate_change(event, condition)
    if isinstance(condition, CompositeCondition):
        return _evaluate_composite(event, condition)
    return NO_MATCH


def evaluate(event: Event, condition: Condition) -> MatchResult:
    """Evaluate a condition tree against an event.

    Args:
        event: Event snapshot to test.
        condition: Root of the condition tree.

    Returns:
        MatchResult with the matched flag and descriptions of matched leaves.
    """
    try:
        return _evaluate(event, condition)
    except (TypeError, ValueError, ArithmeticError, AttributeError, RecursionError) as e:
        logger.debug("Condition evaluation failed, treating as non-match: %s", e)
        return NO_MATCH
