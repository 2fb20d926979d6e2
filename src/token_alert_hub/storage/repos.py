"""Repository pattern implementations for data access.

This module provides data access for alert rules, the delivery log, batches
and the dedup cache, plus adapters that expose them through the protocols
the rule engine and delivery scheduler consume.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from token_alert_hub.alerter.models import DeliveryStatus
from token_alert_hub.rules.models import (
    Rule,
    RuleValidationError,
    condition_from_dict,
    condition_to_dict,
)
from token_alert_hub.rules.store import RetirementNotifier
from token_alert_hub.storage.models import (
    AlertBatchModel,
    AlertRuleModel,
    DedupCacheModel,
    DeliveryLogModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from token_alert_hub.alerter.models import Batch, DeliveryRecord

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

TERMINAL_STATUSES = tuple(s.value for s in DeliveryStatus if s.is_terminal)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; all stored times are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _insert_for(session: AsyncSession) -> Any:
    """Dialect-specific insert supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


# ============================================================================
# Rules
# ============================================================================


def rule_to_values(rule: Rule) -> dict[str, Any]:
    """Column values for a rule."""
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "enabled": rule.enabled,
        "root_condition": condition_to_dict(rule.condition),
        "priority": rule.priority.value,
        "alert_type": rule.alert_type.value,
        "channels": list(rule.channels),
        "message": rule.message,
        "cooldown_seconds": int(rule.cooldown_seconds),
        "max_alerts_per_hour": rule.max_alerts_per_hour,
        "created_by": rule.owner,
        "tags": list(rule.tags),
        "last_triggered_at": rule.last_triggered_at,
        "trigger_count": rule.trigger_count,
    }


def rule_from_model(model: AlertRuleModel) -> Rule:
    """Build a Rule from a row.

    Raises:
        RuleValidationError: If the stored rule is not valid.
    """
    return Rule(
        id=model.id,
        name=model.name,
        condition=condition_from_dict(model.root_condition),
        channels=tuple(model.channels or ()),
        priority=model.priority,
        alert_type=model.alert_type,
        enabled=model.enabled,
        message=model.message,
        cooldown_seconds=model.cooldown_seconds,
        max_alerts_per_hour=model.max_alerts_per_hour,
        owner=model.created_by,
        description=model.description,
        tags=tuple(model.tags or ()),
        last_triggered_at=_as_utc(model.last_triggered_at),
        trigger_count=model.trigger_count,
    )


class RuleRepository:
    """Repository for alert rules."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    def _to_rules(self, models: list[AlertRuleModel]) -> list[Rule]:
        rules = []
        for model in models:
            try:
                rules.append(rule_from_model(model))
            except (RuleValidationError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Skipping invalid stored rule {model.id}: {e}")
        return rules

    async def get(self, rule_id: str) -> Rule | None:
        """Get a rule by id."""
        model = await self.session.get(AlertRuleModel, rule_id)
        return rule_from_model(model) if model else None

    async def list_all(self) -> list[Rule]:
        result = await self.session.execute(select(AlertRuleModel).order_by(AlertRuleModel.created_at))
        return self._to_rules(list(result.scalars().all()))

    async def list_enabled(self) -> list[Rule]:
        """All enabled rules, oldest first. Invalid rows are skipped."""
        result = await self.session.execute(
            select(AlertRuleModel)
            .where(AlertRuleModel.enabled.is_(True))
            .order_by(AlertRuleModel.created_at)
        )
        return self._to_rules(list(result.scalars().all()))

    async def list_by_owner(self, owner: str) -> list[Rule]:
        result = await self.session.execute(
            select(AlertRuleModel)
            .where(AlertRuleModel.created_by == owner)
            .order_by(AlertRuleModel.created_at)
        )
        return self._to_rules(list(result.scalars().all()))

    async def save(self, rule: Rule) -> Rule:
        """Insert or update a rule.

        Args:
            rule: Rule to store.

        Returns:
            The stored rule.
        """
        rule.validate()
        now = datetime.now(UTC)
        values = rule_to_values(rule)
        insert = _insert_for(self.session)
        stmt = insert(AlertRuleModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                **{k: getattr(stmt.excluded, k) for k in values if k != "id"},
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return rule

    async def delete(self, rule_id: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""
        result = await self.session.execute(
            delete(AlertRuleModel).where(AlertRuleModel.id == rule_id)
        )
        return result.rowcount > 0

    async def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        result = await self.session.execute(
            update(AlertRuleModel)
            .where(AlertRuleModel.id == rule_id)
            .values(enabled=enabled, updated_at=datetime.now(UTC))
        )
        return result.rowcount > 0

    async def record_trigger(self, rule_id: str, triggered_at: datetime) -> bool:
        """Bump trigger statistics in a single UPDATE."""
        result = await self.session.execute(
            update(AlertRuleModel)
            .where(AlertRuleModel.id == rule_id)
            .values(
                last_triggered_at=triggered_at,
                trigger_count=AlertRuleModel.trigger_count + 1,
            )
        )
        return result.rowcount > 0


# ============================================================================
# Delivery log
# ============================================================================


@dataclass
class DeliveryLogDTO:
    """Data transfer object for delivery log rows."""

    id: str
    alert_id: str | None
    rule_id: str | None
    batch_id: str | None
    channel_id: str
    channel_type: str
    status: str
    retry_count: int
    last_error: str | None
    created_at: datetime
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DeliveryLogModel) -> DeliveryLogDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            alert_id=model.alert_id,
            rule_id=model.rule_id,
            batch_id=model.batch_id,
            channel_id=model.channel_id,
            channel_type=model.channel_type,
            status=model.status,
            retry_count=model.retry_count,
            last_error=model.last_error,
            created_at=_as_utc(model.created_at),  # type: ignore[arg-type]
            sent_at=_as_utc(model.sent_at),
            delivered_at=_as_utc(model.delivered_at),
            next_retry_at=_as_utc(model.next_retry_at),
        )


class DeliveryLogRepository:
    """Repository for delivery records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: DeliveryRecord) -> None:
        """Write the record's current state."""
        values = {
            "id": record.id,
            "alert_id": record.alert_id,
            "rule_id": record.rule_id,
            "batch_id": record.batch_id,
            "channel_id": record.channel_id,
            "channel_type": record.channel_type,
            "status": record.status.value,
            "retry_count": record.retry_count,
            "last_error": record.last_error,
            "created_at": record.created_at,
            "sent_at": record.sent_at,
            "delivered_at": record.delivered_at,
            "next_retry_at": record.next_retry_at,
        }
        insert = _insert_for(self.session)
        stmt = insert(DeliveryLogModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={k: getattr(stmt.excluded, k) for k in values if k not in ("id", "created_at")},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get(self, record_id: str) -> DeliveryLogDTO | None:
        model = await self.session.get(DeliveryLogModel, record_id)
        return DeliveryLogDTO.from_model(model) if model else None

    async def list_for_alert(self, alert_id: str) -> list[DeliveryLogDTO]:
        result = await self.session.execute(
            select(DeliveryLogModel)
            .where(DeliveryLogModel.alert_id == alert_id)
            .order_by(DeliveryLogModel.created_at)
        )
        return [DeliveryLogDTO.from_model(m) for m in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(DeliveryLogModel.status, func.count()).group_by(DeliveryLogModel.status)
        )
        return {status: count for status, count in result.all()}

    async def cleanup(self, days_to_keep: int = 7, *, now: datetime | None = None) -> int:
        """Delete terminal rows older than ``days_to_keep`` days.

        Returns:
            Number of rows deleted.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days_to_keep)
        result = await self.session.execute(
            delete(DeliveryLogModel).where(
                DeliveryLogModel.status.in_(TERMINAL_STATUSES),
                DeliveryLogModel.created_at < cutoff,
            )
        )
        if result.rowcount:
            logger.info(f"Cleaned up {result.rowcount} old delivery log rows")
        return result.rowcount


# ============================================================================
# Batches
# ============================================================================


@dataclass
class AlertBatchDTO:
    """Data transfer object for stored batches."""

    id: str
    batch_type: str
    priority: str
    summary: str
    alert_ids: list[str]
    created_at: datetime
    sent_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AlertBatchModel) -> AlertBatchDTO:
        return cls(
            id=model.id,
            batch_type=model.batch_type,
            priority=model.priority,
            summary=model.summary,
            alert_ids=list(model.alert_ids),
            created_at=_as_utc(model.created_at),  # type: ignore[arg-type]
            sent_at=_as_utc(model.sent_at),
        )


class BatchRepository:
    """Repository for delivered batches."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, batch: Batch) -> AlertBatchDTO:
        model = AlertBatchModel(
            id=batch.id,
            batch_type=batch.alert_type.value,
            priority=batch.priority.value,
            summary=batch.summary,
            alert_count=len(batch.alerts),
            alert_ids=batch.alert_ids,
            created_at=batch.created_at,
        )
        self.session.add(model)
        await self.session.flush()
        return AlertBatchDTO.from_model(model)

    async def mark_sent(self, batch_id: str, sent_at: datetime | None = None) -> bool:
        result = await self.session.execute(
            update(AlertBatchModel)
            .where(AlertBatchModel.id == batch_id)
            .values(sent_at=sent_at or datetime.now(UTC))
        )
        return result.rowcount > 0

    async def get(self, batch_id: str) -> AlertBatchDTO | None:
        model = await self.session.get(AlertBatchModel, batch_id)
        return AlertBatchDTO.from_model(model) if model else None

    async def recent(self, limit: int = 50) -> list[AlertBatchDTO]:
        result = await self.session.execute(
            select(AlertBatchModel).order_by(AlertBatchModel.created_at.desc()).limit(limit)
        )
        return [AlertBatchDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Dedup cache
# ============================================================================


class DedupCacheRepository:
    """Repository for persisted dedup keys."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def try_insert(
        self,
        dedup_key: str,
        expires_at: datetime,
        *,
        now: datetime | None = None,
        alert_id: str | None = None,
        rule_id: str | None = None,
        identity: str | None = None,
    ) -> bool:
        """Insert a key unless a live entry already exists.

        An expired entry for the same key is replaced.

        Returns:
            True if the key was inserted, False if a live entry exists.
        """
        now = now or datetime.now(UTC)
        await self.session.execute(
            delete(DedupCacheModel).where(
                DedupCacheModel.dedup_key == dedup_key,
                DedupCacheModel.expires_at <= now,
            )
        )
        insert = _insert_for(self.session)
        stmt = (
            insert(DedupCacheModel)
            .values(
                dedup_key=dedup_key,
                alert_id=alert_id,
                rule_id=rule_id,
                identity=identity,
                created_at=now,
                expires_at=expires_at,
            )
            .on_conflict_do_nothing(index_elements=["dedup_key"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def is_live(self, dedup_key: str, *, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            select(func.count())
            .select_from(DedupCacheModel)
            .where(DedupCacheModel.dedup_key == dedup_key, DedupCacheModel.expires_at > now)
        )
        return result.scalar_one() > 0

    async def delete_expired(self, *, now: datetime | None = None) -> int:
        """Delete expired keys. Returns the number deleted."""
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            delete(DedupCacheModel).where(DedupCacheModel.expires_at <= now)
        )
        return result.rowcount


# ============================================================================
# Protocol adapters
# ============================================================================


class SqlRuleStore(RetirementNotifier):
    """RuleStore backed by the ``alert_rules`` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        """Initialize the store.

        Args:
            session_factory: Callable returning an async session context,
                e.g. ``DatabaseManager.get_async_session``.
        """
        super().__init__()
        self._session_factory = session_factory

    async def list_enabled(self) -> list[Rule]:
        async with self._session_factory() as session:
            return await RuleRepository(session).list_enabled()

    async def record_trigger(self, rule_id: str, triggered_at: datetime) -> None:
        async with self._session_factory() as session:
            await RuleRepository(session).record_trigger(rule_id, triggered_at)

    async def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        """Enable or disable a rule; disabling notifies retirement listeners."""
        async with self._session_factory() as session:
            changed = await RuleRepository(session).set_enabled(rule_id, enabled)
        if changed and not enabled:
            self._notify_retired(rule_id)
        return changed

    async def delete(self, rule_id: str) -> bool:
        """Delete a rule and notify retirement listeners."""
        async with self._session_factory() as session:
            deleted = await RuleRepository(session).delete(rule_id)
        if deleted:
            self._notify_retired(rule_id)
        return deleted


class SqlDeliveryLog:
    """DeliveryLog sink writing to ``alert_delivery_log``."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def record(self, record: DeliveryRecord) -> None:
        async with self._session_factory() as session:
            await DeliveryLogRepository(session).upsert(record)

    async def record_batch(self, batch: Batch) -> None:
        async with self._session_factory() as session:
            await BatchRepository(session).insert(batch)

    async def cleanup(self, days_to_keep: int = 7) -> int:
        async with self._session_factory() as session:
            return await DeliveryLogRepository(session).cleanup(days_to_keep)


class SqlDedupStore:
    """DedupStore backed by the ``alert_dedup_cache`` table.

    Atomicity comes from the primary key: two concurrent inserts of the same
    key cannot both succeed.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_factory = session_factory
        self._now = now

    async def should_suppress(self, key: str, window: float) -> bool:
        now = self._now()
        async with self._session_factory() as session:
            inserted = await DedupCacheRepository(session).try_insert(
                key, now + timedelta(seconds=window), now=now
            )
        if not inserted:
            logger.debug("Duplicate alert suppressed: %s", key[:12])
        return not inserted

    async def sweep(self) -> int:
        async with self._session_factory() as session:
            return await DedupCacheRepository(session).delete_expired(now=self._now())
