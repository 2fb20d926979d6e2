"""Data models for the alerter module."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from token_alert_hub.rules.models import AlertType, PendingAlert, Priority


class DeliveryError(Exception):
    """Base error for the delivery pipeline."""


class InvalidTransitionError(DeliveryError):
    """Raised when a delivery record is moved to a state it cannot reach."""

    def __init__(self, record_id: str, current: DeliveryStatus, target: DeliveryStatus) -> None:
        super().__init__(
            f"Invalid delivery transition for {record_id}: {current.value} -> {target.value}"
        )
        self.record_id = record_id
        self.current = current
        self.target = target


class DeliveryStatus(Enum):
    """Lifecycle of a single delivery attempt chain."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED})

_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.SENDING, DeliveryStatus.CANCELLED}),
    DeliveryStatus.SENDING: frozenset(
        {
            DeliveryStatus.SENT,
            DeliveryStatus.FAILED,
            DeliveryStatus.RETRYING,
            DeliveryStatus.CANCELLED,
        }
    ),
    DeliveryStatus.RETRYING: frozenset({DeliveryStatus.SENDING, DeliveryStatus.CANCELLED}),
    DeliveryStatus.SENT: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    """Return True if a record in ``current`` may move to ``target``."""
    return target in _TRANSITIONS[current]


@dataclass
class DeliveryRecord:
    """Delivery of one alert (or batch) to one channel.

    Attributes:
        id: Unique record id, also used as the idempotency key.
        alert_id: Alert delivered by this record, None for batch records.
        rule_id: Rule that produced the alert.
        batch_id: Batch delivered by this record, if any.
        channel_id: Configured channel the record targets.
        channel_type: Adapter type (discord, telegram, webhook).
        status: Current lifecycle state.
        retry_count: Failed attempts that were followed by a retry.
        last_error: Error text of the most recent failure.
        next_retry_at: When the next attempt is due (retrying only).
    """

    alert_id: str | None
    rule_id: str | None
    channel_id: str
    channel_type: str
    batch_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: DeliveryStatus = DeliveryStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None

    def transition(self, target: DeliveryStatus) -> None:
        """Move the record to a new status.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move.
        """
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.id, self.status, target)
        self.status = target

    @property
    def message_key(self) -> str:
        """Id of the alert or batch whose message this record carries."""
        return self.batch_id or self.alert_id or self.id


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single adapter attempt."""

    ok: bool
    error: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls) -> SendResult:
        return cls(ok=True)

    @classmethod
    def retry(cls, error: str) -> SendResult:
        return cls(ok=False, error=error, retryable=True)

    @classmethod
    def fail(cls, error: str) -> SendResult:
        return cls(ok=False, error=error, retryable=False)


@dataclass
class Batch:
    """A group of same-type alerts delivered as one message."""

    alert_type: AlertType
    priority: Priority
    alerts: list[PendingAlert]
    summary: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def alert_ids(self) -> list[str]:
        return [a.id for a in self.alerts]

    @property
    def channels(self) -> tuple[str, ...]:
        """Union of constituent channels, in first-seen order."""
        seen: dict[str, None] = {}
        for alert in self.alerts:
            for channel in alert.channels:
                seen.setdefault(channel, None)
        return tuple(seen)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alert_type": self.alert_type.value,
            "priority": self.priority.value,
            "summary": self.summary,
            "count": len(self.alerts),
            "alerts": [a.to_payload() for a in self.alerts],
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class FormattedAlert:
    """A formatted alert message ready for delivery across multiple channels.

    Attributes:
        title: Short alert title/headline.
        body: Main alert body text.
        discord_embed: Discord-optimized embed dictionary.
        telegram_markdown: Telegram-formatted markdown string.
        plain_text: Plain text fallback for other channels.
        payload: Structured JSON body for webhook and hub consumers.
        links: Dictionary of relevant links (e.g., token explorer).
    """

    title: str
    body: str
    discord_embed: dict[str, object]
    telegram_markdown: str
    plain_text: str
    payload: dict[str, Any] = field(default_factory=dict)
    links: dict[str, str] = field(default_factory=dict)
