"""SQLAlchemy models for persistent storage.

This module defines the database schema for alert rules, the delivery log,
the dedup cache and delivered batches.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AlertRuleModel(Base):
    """SQLAlchemy model for alert rules.

    The condition tree is stored as JSON in the shape produced by
    ``condition_to_dict``.
    """

    __tablename__ = "alert_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    root_condition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False, default="trading_signal")
    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    max_alerts_per_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_triggered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_alert_rules_user", "created_by"),
        Index("idx_alert_rules_enabled", "enabled"),
        Index("idx_alert_rules_priority", "priority"),
    )


class DeliveryLogModel(Base):
    """SQLAlchemy model for delivery records.

    One row per (alert or batch, channel); the row is rewritten on every
    state change.
    """

    __tablename__ = "alert_delivery_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    alert_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    rule_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    channel_id: Mapped[str] = mapped_column(String(100), nullable=False)
    channel_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_delivery_log_alert", "alert_id"),
        Index("idx_delivery_log_rule", "rule_id"),
        Index("idx_delivery_log_channel", "channel_id"),
        Index("idx_delivery_log_status", "status"),
        Index("idx_delivery_log_retry", "next_retry_at"),
    )


class DedupCacheModel(Base):
    """SQLAlchemy model for persisted dedup keys."""

    __tablename__ = "alert_dedup_cache"

    dedup_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    alert_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    rule_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    identity: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_dedup_expires", "expires_at"),
        Index("idx_dedup_identity", "identity"),
    )


class AlertBatchModel(Base):
    """SQLAlchemy model for delivered batches."""

    __tablename__ = "alert_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_type: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    alert_count: Mapped[int] = mapped_column(Integer, nullable=False)
    alert_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_batches_type", "batch_type"),
        Index("idx_batches_created", "created_at"),
    )
