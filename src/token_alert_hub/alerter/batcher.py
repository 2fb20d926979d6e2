"""Alert batcher.

Consolidates bursts of similar, non-critical alerts into one summary message.
Alerts are bucketed by (alert type, priority); the first alert in a bucket
starts the window timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from token_alert_hub.alerter.models import Batch
from token_alert_hub.metrics import BATCHES_TOTAL
from token_alert_hub.rules.models import AlertType, PendingAlert, Priority

logger = logging.getLogger(__name__)

DEFAULT_BATCHABLE_TYPES = frozenset(
    {
        AlertType.NEW_TOKEN,
        AlertType.VOLUME_SPIKE,
        AlertType.PRICE_ALERT,
        AlertType.WALLET_ACTIVITY,
    }
)

_SUMMARIES = {
    AlertType.NEW_TOKEN: "{count} new tokens discovered",
    AlertType.VOLUME_SPIKE: "{count} volume spikes detected",
    AlertType.PRICE_ALERT: "{count} price alerts triggered",
    AlertType.WALLET_ACTIVITY: "{count} tracked wallet activities",
    AlertType.WHALE_MOVEMENT: "{count} whale movements detected",
    AlertType.SMART_MONEY: "{count} smart money activities",
}

BucketKey = tuple[AlertType, Priority]


def generate_summary(alert_type: AlertType, count: int) -> str:
    """Human-readable summary line for a batch."""
    template = _SUMMARIES.get(alert_type)
    if template is None:
        return f"{count} {alert_type.value.replace('_', ' ')} alerts"
    return template.format(count=count)


def highest_priority(alerts: Iterable[PendingAlert]) -> Priority:
    return max((a.priority for a in alerts), key=lambda p: p.rank)


@dataclass
class _Bucket:
    alerts: list[PendingAlert] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    timer: asyncio.Task[None] | None = None


class AlertBatcher:
    """Buffers batchable alerts and emits batches or single releases.

    Args:
        on_single: Called for each alert of a bucket that stayed below
            ``min_size`` when it flushed.
        on_batch: Called with every batch that reached ``min_size``.
    """

    def __init__(
        self,
        *,
        on_single: Callable[[PendingAlert], Awaitable[object]],
        on_batch: Callable[[Batch], Awaitable[object]],
        window_seconds: float = 30.0,
        max_size: int = 10,
        min_size: int = 2,
        batchable_types: Iterable[AlertType] = DEFAULT_BATCHABLE_TYPES,
        enabled: bool = True,
    ) -> None:
        if min_size < 1 or max_size < min_size:
            raise ValueError("Batch sizes must satisfy 1 <= min_size <= max_size")
        self.on_single = on_single
        self.on_batch = on_batch
        self.window_seconds = window_seconds
        self.max_size = max_size
        self.min_size = min_size
        self.batchable_types = frozenset(batchable_types)
        self.enabled = enabled
        self._buckets: dict[BucketKey, _Bucket] = {}

    @property
    def pending_count(self) -> int:
        """Alerts currently buffered."""
        return sum(len(b.alerts) for b in self._buckets.values())

    def should_batch(self, alert: PendingAlert) -> bool:
        """Critical alerts and non-batchable types always go straight out."""
        return (
            self.enabled
            and alert.priority is not Priority.CRITICAL
            and alert.alert_type in self.batchable_types
        )

    async def add(self, alert: PendingAlert) -> bool:
        """Buffer an alert if it is batchable.

        Returns:
            True if the alert was buffered; False if the caller must deliver
            it directly.
        """
        if not self.should_batch(alert):
            return False

        key = (alert.alert_type, alert.priority)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket()
            bucket.timer = asyncio.create_task(self._flush_after_window(key, bucket))
            self._buckets[key] = bucket
        bucket.alerts.append(alert)

        logger.debug(
            f"Added {alert.alert_type.value} to batch ({len(bucket.alerts)}/{self.max_size})"
        )

        if len(bucket.alerts) >= self.max_size:
            await self.flush(key)
        return True

    def discard_rule(self, rule_id: str) -> list[PendingAlert]:
        """Drop a rule's buffered alerts; buckets left empty are closed.

        Returns:
            The alerts that were dropped.
        """
        dropped: list[PendingAlert] = []
        for key, bucket in list(self._buckets.items()):
            kept = [a for a in bucket.alerts if a.rule_id != rule_id]
            if len(kept) == len(bucket.alerts):
                continue
            dropped.extend(a for a in bucket.alerts if a.rule_id == rule_id)
            bucket.alerts = kept
            if not kept:
                del self._buckets[key]
                if bucket.timer is not None:
                    bucket.timer.cancel()
        if dropped:
            logger.info(f"Dropped {len(dropped)} buffered alerts of rule {rule_id}")
        return dropped

    async def _flush_after_window(self, key: BucketKey, bucket: _Bucket) -> None:
        await asyncio.sleep(self.window_seconds)
        if self._buckets.get(key) is bucket:
            await self.flush(key)

    async def flush(self, key: BucketKey) -> Batch | None:
        """Flush one bucket now.

        Returns:
            The emitted batch, or None if the bucket was released singly.
        """
        bucket = self._buckets.pop(key, None)
        if bucket is None:
            return None

        current = asyncio.current_task()
        if bucket.timer is not None and bucket.timer is not current:
            bucket.timer.cancel()

        alert_type, _ = key
        if len(bucket.alerts) < self.min_size:
            logger.debug(
                f"Buffer for {alert_type.value} has {len(bucket.alerts)} alerts "
                f"(min: {self.min_size}), sending individually"
            )
            for alert in bucket.alerts:
                try:
                    await self.on_single(alert)
                except Exception as e:
                    logger.error(f"Error releasing alert {alert.id}: {e}")
            return None

        batch = Batch(
            alert_type=alert_type,
            priority=highest_priority(bucket.alerts),
            alerts=list(bucket.alerts),
            summary=generate_summary(alert_type, len(bucket.alerts)),
        )
        BATCHES_TOTAL.labels(alert_type=alert_type.value).inc()
        logger.info(f"Flushed batch for {alert_type.value}: {len(batch.alerts)} alerts")
        try:
            await self.on_batch(batch)
        except Exception as e:
            logger.error(f"Error in batch callback: {e}")
        return batch

    async def flush_all(self) -> list[Batch]:
        """Flush every bucket immediately (used on shutdown)."""
        keys = list(self._buckets)
        if keys:
            logger.info(f"Flushing all batch buffers ({len(keys)})")
        batches = []
        for key in keys:
            batch = await self.flush(key)
            if batch is not None:
                batches.append(batch)
        return batches

    async def close(self) -> None:
        """Flush everything and make sure no window timer is left running."""
        timers = [b.timer for b in self._buckets.values() if b.timer is not None]
        await self.flush_all()
        for timer in timers:
            if not timer.done():
                timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
