"""Data models for alert rules, condition trees and monitored events."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

# Leaf comparison operators
LEAF_OPERATORS = frozenset(
    {">=", "<=", ">", "<", "==", "!=", "in", "not_in", "contains", "not_contains"}
)

# Change-over-time modes; "change" compares the absolute difference with an operator
CHANGE_MODES = frozenset({"percent_increase", "percent_decrease", "percent_change_abs", "change"})

# Operators usable on an absolute change
CHANGE_OPERATORS = frozenset({">=", "<=", ">", "<", "==", "!="})

# Timeframes accepted by change conditions, in seconds
TIMEFRAME_SECONDS: dict[str, int] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "24h": 24 * 60 * 60,
}


class RuleValidationError(Exception):
    """Raised when a rule or condition definition is invalid."""


class Priority(Enum):
    """Alert priority levels, ordered from least to most urgent."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank used to pick the highest priority in a group."""
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: str | Priority) -> Priority:
        """Parse a priority, accepting ``medium`` as an alias for ``normal``."""
        if isinstance(value, Priority):
            return value
        normalized = str(value).strip().lower()
        if normalized == "medium":
            return cls.NORMAL
        try:
            return cls(normalized)
        except ValueError as e:
            raise RuleValidationError(f"Unknown priority: {value!r}") from e


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


class AlertType(Enum):
    """Kinds of alerts; used for batching buckets and summaries."""

    NEW_TOKEN = "new_token"
    VOLUME_SPIKE = "volume_spike"
    WHALE_MOVEMENT = "whale_movement"
    LIQUIDITY_DRAIN = "liquidity_drain"
    AUTHORITY_CHANGE = "authority_change"
    PRICE_ALERT = "price_alert"
    SMART_MONEY = "smart_money"
    WALLET_ACTIVITY = "wallet_activity"
    TRADING_SIGNAL = "trading_signal"
    RUG_DETECTED = "rug_detected"
    SYSTEM = "system"


# ============================================================================
# Condition tree
# ============================================================================


@dataclass(frozen=True)
class LeafCondition:
    """Compare one event field against a configured value.

    Attributes:
        field: Dotted path into the event data (e.g. ``whale.action``).
        operator: One of LEAF_OPERATORS.
        value: Threshold or reference value.
    """

    field: str
    operator: str
    value: Any

    def describe(self) -> str:
        """Human-readable description used in match reasons."""
        return f"{self.field} {self.operator} {self.value}"


@dataclass(frozen=True)
class ChangeCondition:
    """Match on how much a field moved over a timeframe.

    The past value comes from the event's history snapshot closest to
    ``event.timestamp - timeframe``. Percent modes compare the relative
    change against ``threshold``; mode ``change`` applies ``operator`` to
    ``current - past`` with ``threshold`` as the right-hand side.
    """

    field: str
    mode: str
    threshold: float
    timeframe: str
    operator: str = ">="

    def describe(self) -> str:
        """Human-readable description used in match reasons."""
        if self.mode == "change":
            return f"{self.field} {self.timeframe} change {self.operator} {self.threshold}"
        return f"{self.field} {self.mode} >= {self.threshold}% in {self.timeframe}"


@dataclass(frozen=True)
class CompositeCondition:
    """Combine child conditions with AND, OR or NOT."""

    operator: Literal["AND", "OR", "NOT"]
    children: tuple[Condition, ...]


Condition = LeafCondition | ChangeCondition | CompositeCondition


def condition_from_dict(data: Mapping[str, Any]) -> Condition:
    """Build a condition tree from its JSON-compatible representation.

    Accepted shapes:
        ``{"field": ..., "operator": ..., "value": ...}``
        ``{"field": ..., "mode": ..., "threshold": ..., "timeframe": ...}``
        ``{"field": ..., "mode": "change", "operator": ..., "value": ..., "timeframe": ...}``
        ``{"operator": "AND"|"OR"|"NOT", "children": [...]}``

    Raises:
        RuleValidationError: If the structure is not a valid condition.
    """
    if not isinstance(data, Mapping):
        raise RuleValidationError(f"Condition must be an object, got {type(data).__name__}")

    if "children" in data:
        operator = str(data.get("operator", "")).upper()
        if operator not in ("AND", "OR", "NOT"):
            raise RuleValidationError(f"Unknown composite operator: {data.get('operator')!r}")
        children = data["children"]
        if not isinstance(children, list | tuple) or not children:
            raise RuleValidationError("Composite condition needs at least one child")
        if operator == "NOT" and len(children) != 1:
            raise RuleValidationError("NOT condition takes exactly one child")
        return CompositeCondition(
            operator=operator,  # type: ignore[arg-type]
            children=tuple(condition_from_dict(child) for child in children),
        )

    field_path = data.get("field")
    if not isinstance(field_path, str) or not field_path:
        raise RuleValidationError("Condition field is required")

    if "mode" in data:
        mode = str(data["mode"])
        timeframe = str(data.get("timeframe", ""))
        if mode not in CHANGE_MODES:
            raise RuleValidationError(f"Unknown change mode: {mode!r}")
        if timeframe not in TIMEFRAME_SECONDS:
            raise RuleValidationError(f"Unknown timeframe: {timeframe!r}")
        if mode == "change":
            return _absolute_change_from_dict(data, field_path, timeframe)
        try:
            threshold = float(data["threshold"])
        except (KeyError, TypeError, ValueError) as e:
            raise RuleValidationError("Change condition needs a numeric threshold") from e
        return ChangeCondition(field=field_path, mode=mode, threshold=threshold, timeframe=timeframe)

    operator = str(data.get("operator", ""))
    if operator not in LEAF_OPERATORS:
        raise RuleValidationError(f"Unknown operator: {operator!r}")
    value = data.get("value")
    if isinstance(value, list):
        value = tuple(value)
    return LeafCondition(field=field_path, operator=operator, value=value)


def _absolute_change_from_dict(
    data: Mapping[str, Any], field_path: str, timeframe: str
) -> ChangeCondition:
    operator = str(data.get("operator", ""))
    if operator not in CHANGE_OPERATORS:
        raise RuleValidationError(f"Unknown change operator: {operator!r}")
    try:
        value = float(data["value"] if "value" in data else data["threshold"])
    except (KeyError, TypeError, ValueError) as e:
        raise RuleValidationError("Change condition needs a numeric value") from e
    return ChangeCondition(
        field=field_path, mode="change", threshold=value, timeframe=timeframe, operator=operator
    )


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    """Serialize a condition tree to a JSON-compatible dict."""
    if isinstance(condition, CompositeCondition):
        return {
            "operator": condition.operator,
            "children": [condition_to_dict(child) for child in condition.children],
        }
    if isinstance(condition, ChangeCondition) and condition.mode == "change":
        return {
            "field": condition.field,
            "mode": condition.mode,
            "operator": condition.operator,
            "value": condition.threshold,
            "timeframe": condition.timeframe,
        }
    if isinstance(condition, ChangeCondition):
        return {
            "field": condition.field,
            "mode": condition.mode,
            "threshold": condition.threshold,
            "timeframe": condition.timeframe,
        }
    value = list(condition.value) if isinstance(condition.value, tuple) else condition.value
    return {"field": condition.field, "operator": condition.operator, "value": value}


# ============================================================================
# Rules and events
# ============================================================================


@dataclass
class Rule:
    """A user-defined alert rule.

    Attributes:
        id: Unique rule identifier.
        name: Display name.
        condition: Root of the condition tree.
        channels: Channel ids the alert is delivered to.
        priority: Alert priority.
        alert_type: Kind of alert produced (drives batching).
        enabled: Disabled rules never fire.
        message: Optional message template with ``{placeholders}``.
        cooldown_seconds: Minimum seconds between two firings.
        max_alerts_per_hour: Firings allowed in any trailing 60-minute window.
        owner: User that created the rule.
        description: Optional longer description.
        tags: Free-form labels.
        last_triggered_at: When the rule last fired.
        trigger_count: How many times the rule has fired.
    """

    id: str
    name: str
    condition: Condition
    channels: tuple[str, ...]
    priority: Priority = Priority.NORMAL
    alert_type: AlertType = AlertType.TRADING_SIGNAL
    enabled: bool = True
    message: str | None = None
    cooldown_seconds: float = 300
    max_alerts_per_hour: int = 10
    owner: str = ""
    description: str | None = None
    tags: tuple[str, ...] = ()
    last_triggered_at: datetime | None = None
    trigger_count: int = 0

    def __post_init__(self) -> None:
        self.channels = tuple(self.channels)
        self.tags = tuple(self.tags)
        self.priority = Priority.parse(self.priority)
        if not isinstance(self.alert_type, AlertType):
            self.alert_type = AlertType(self.alert_type)
        self.validate()

    def validate(self) -> None:
        """Check rule invariants.

        Raises:
            RuleValidationError: If the rule is not usable.
        """
        if not self.name or not self.name.strip():
            raise RuleValidationError("Rule name is required")
        if not self.channels:
            raise RuleValidationError("Rule must have at least one channel")
        if self.cooldown_seconds < 0:
            raise RuleValidationError("Cooldown must be non-negative")
        if self.max_alerts_per_hour < 1:
            raise RuleValidationError("Max alerts per hour must be at least 1")

    @classmethod
    def create(cls, name: str, condition: Condition, channels: list[str], **kwargs: Any) -> Rule:
        """Create a new rule with a generated id."""
        return cls(id=str(uuid.uuid4()), name=name, condition=condition, channels=tuple(channels), **kwargs)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Rule:
        """Build a rule from a JSON-compatible mapping.

        ``condition`` uses the ``condition_from_dict`` shape; ``id`` is
        generated when absent.

        Raises:
            RuleValidationError: If the rule or its condition is not valid.
        """
        if "condition" not in data:
            raise RuleValidationError("Rule condition is required")
        try:
            return cls(
                id=str(data.get("id") or uuid.uuid4()),
                name=str(data.get("name", "")),
                condition=condition_from_dict(data["condition"]),
                channels=tuple(data.get("channels") or ()),
                priority=data.get("priority", Priority.NORMAL),
                alert_type=data.get("alert_type", AlertType.TRADING_SIGNAL),
                enabled=bool(data.get("enabled", True)),
                message=data.get("message"),
                cooldown_seconds=data.get("cooldown_seconds", 300),
                max_alerts_per_hour=data.get("max_alerts_per_hour", 10),
                owner=str(data.get("owner", "")),
                description=data.get("description"),
                tags=tuple(data.get("tags") or ()),
            )
        except (ValueError, TypeError) as e:
            raise RuleValidationError(str(e)) from e


@dataclass(frozen=True)
class Event:
    """Snapshot of a monitored token or wallet at a point in time.

    Attributes:
        identity: Mint or wallet address the event is about.
        timestamp: When the snapshot was taken.
        data: Field values referenced by condition leaves.
        symbol: Optional token symbol.
        event_type: ``token``, ``wallet`` or ``pattern``.
        history: Past snapshots keyed by timestamp, used by change conditions.
    """

    identity: str
    timestamp: datetime
    data: Mapping[str, Any] = field(default_factory=dict)
    symbol: str | None = None
    event_type: str = "token"
    history: Mapping[datetime, Mapping[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "identity": self.identity,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
            "symbol": self.symbol,
            "event_type": self.event_type,
            "history": {ts.isoformat(): dict(snap) for ts, snap in self.history.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        """Deserialize from a dictionary produced by to_dict()."""
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        elif not isinstance(timestamp, datetime):
            timestamp = datetime.now(UTC)

        history: dict[datetime, Mapping[str, Any]] = {}
        for ts, snapshot in (data.get("history") or {}).items():
            key = datetime.fromisoformat(ts) if isinstance(ts, str) else ts
            history[key] = snapshot

        return cls(
            identity=str(data["identity"]),
            timestamp=timestamp,
            data=dict(data.get("data") or {}),
            symbol=data.get("symbol"),
            event_type=str(data.get("event_type", "token")),
            history=history,
        )


@dataclass(frozen=True)
class MatchResult:
    """Outcome of evaluating a condition tree against an event."""

    matched: bool
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class PendingAlert:
    """An alert produced by a rule match, waiting for delivery.

    Attributes:
        id: Unique alert id.
        rule_id: Rule that fired.
        rule_name: Name of that rule.
        identity: Event identity (mint or wallet).
        alert_type: Kind of alert.
        priority: Alert priority.
        title: Short headline.
        message: Rendered message body.
        reasons: Descriptions of the matched leaves.
        channels: Target channel ids.
        dedup_key: Key used for duplicate suppression.
        data: Event fields included in the payload.
        symbol: Token symbol when known.
        created_at: When the alert was produced.
    """

    id: str
    rule_id: str
    rule_name: str
    identity: str
    alert_type: AlertType
    priority: Priority
    title: str
    message: str
    reasons: tuple[str, ...]
    channels: tuple[str, ...]
    dedup_key: str
    data: Mapping[str, Any] = field(default_factory=dict)
    symbol: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        """Payload used for live broadcasts and webhook bodies."""
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "identity": self.identity,
            "symbol": self.symbol,
            "type": self.alert_type.value,
            "priority": self.priority.value,
            "title": self.title,
            "message": self.message,
            "reasons": list(self.reasons),
            "data": dict(self.data),
            "created_at": self.created_at.isoformat(),
        }
