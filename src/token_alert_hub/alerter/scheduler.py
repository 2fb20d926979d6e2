"""Delivery scheduler: drives delivery records through the retry state machine.

Each (alert, channel) pair gets its own DeliveryRecord. Attempts run as tasks
bounded by a global semaphore and a per-channel-type semaphore. Retryable
failures are parked in a heap keyed by ``next_retry_at`` and picked up by a
timer loop; cancelled records are skipped when they come off the heap.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
from collections import Counter
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from token_alert_hub.alerter.formatter import AlertFormatter
from token_alert_hub.alerter.models import DeliveryRecord, DeliveryStatus, SendResult
from token_alert_hub.metrics import DELIVERY_LATENCY, DELIVERY_TRANSITIONS

if TYPE_CHECKING:
    from token_alert_hub.alerter.models import Batch, FormattedAlert
    from token_alert_hub.rules.models import PendingAlert

logger = logging.getLogger(__name__)

UNKNOWN_CHANNEL_TYPE = "unknown"


class ChannelAdapter(Protocol):
    """Protocol for alert delivery channels.

    ``send`` makes exactly one attempt and classifies failures; it should be
    idempotent on ``record.id``.
    """

    channel_id: str
    channel_type: str

    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        """Attempt delivery once."""
        ...


class DeliveryLog(Protocol):
    """Sink that persists every delivery record state change."""

    async def record(self, record: DeliveryRecord) -> None:
        """Persist the record's current state."""
        ...


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings.

    Attributes:
        base_delay: Delay before the first retry, in seconds.
        max_delay: Cap on any single delay, in seconds.
        max_attempts: Total attempts per record, first one included.
        jitter: Relative jitter applied to every delay (0.1 = ±10%).
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5
    jitter: float = 0.1

    def delay_for(self, retry_number: int) -> float:
        """Un-jittered delay before retry number ``retry_number`` (1-based)."""
        return min(self.base_delay * 2 ** (retry_number - 1), self.max_delay)


@dataclass
class ChannelStats:
    total: int = 0
    sent: int = 0
    failed: int = 0


@dataclass
class DeliveryStats:
    """Snapshot of delivery outcomes."""

    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_channel: dict[str, ChannelStats] = field(default_factory=dict)
    avg_delivery_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        sent = self.by_status.get(DeliveryStatus.SENT.value, 0)
        failed = self.by_status.get(DeliveryStatus.FAILED.value, 0)
        finished = sent + failed
        return sent / finished if finished else 0.0


class DeliveryScheduler:
    """Creates delivery records and drives them to a terminal state.

    Example:
        ```python
        scheduler = DeliveryScheduler([DiscordChannel(url)])
        await scheduler.start()
        await scheduler.dispatch(alert)
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        channels: list[ChannelAdapter],
        *,
        formatter: AlertFormatter | None = None,
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = 10,
        channel_type_concurrency: dict[str, int] | None = None,
        default_channel_type_concurrency: int = 4,
        delivery_log: DeliveryLog | None = None,
        retry_poll_interval: float = 0.5,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        jitter: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            channels: Configured channel adapters, addressed by channel_id.
            formatter: Formatter used to render alerts and batches.
            retry_policy: Backoff settings.
            max_concurrency: Global cap on in-flight adapter calls.
            channel_type_concurrency: Per-channel-type caps.
            default_channel_type_concurrency: Cap for types not listed above.
            delivery_log: Optional sink for state changes.
            retry_poll_interval: Longest sleep of the retry loop.
            now: Wall clock.
            jitter: Returns the multiplier applied to each backoff delay.
        """
        self._channels: dict[str, ChannelAdapter] = {c.channel_id: c for c in channels}
        self.formatter = formatter or AlertFormatter()
        self.retry_policy = retry_policy or RetryPolicy()
        self._delivery_log = delivery_log
        self._retry_poll_interval = retry_poll_interval
        self._now = now
        spread = self.retry_policy.jitter
        self._jitter = jitter or (lambda: random.uniform(1 - spread, 1 + spread))

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._type_limits = dict(channel_type_concurrency or {})
        self._default_type_limit = default_channel_type_concurrency
        self._type_semaphores: dict[str, asyncio.Semaphore] = {}

        self._records: dict[str, DeliveryRecord] = {}
        self._by_owner: dict[str, list[str]] = {}
        self._messages: dict[str, FormattedAlert] = {}
        self._retry_heap: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._tasks: set[asyncio.Task[None]] = set()
        self._latencies: list[float] = []

        self._running = False
        self._retry_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the retry timer loop."""
        if self._running:
            return
        self._running = True
        self._retry_task = asyncio.create_task(self._retry_loop())
        logger.info("Delivery scheduler started with %d channels", len(self._channels))

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop the retry loop and wait for in-flight attempts."""
        self._running = False
        if self._retry_task is not None:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except TimeoutError:
            logger.warning("Delivery scheduler stopped with %d attempts in flight", len(self._tasks))
        logger.info("Delivery scheduler stopped")

    async def drain(self) -> None:
        """Wait until no attempt task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _retry_loop(self) -> None:
        while self._running:
            try:
                await self.run_due_retries()
            except Exception as e:
                logger.error(f"Retry loop error: {e}")
            await asyncio.sleep(self._seconds_until_next_retry())

    def _seconds_until_next_retry(self) -> float:
        if not self._retry_heap:
            return self._retry_poll_interval
        wait = (self._retry_heap[0][0] - self._now()).total_seconds()
        return min(self._retry_poll_interval, max(0.0, wait))

    # ------------------------------------------------------------------
    # Record creation
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> DeliveryRecord | None:
        return self._records.get(record_id)

    def records_for(self, owner_id: str) -> list[DeliveryRecord]:
        """Records belonging to an alert or batch id."""
        return [self._records[r] for r in self._by_owner.get(owner_id, []) if r in self._records]

    def _channel_type(self, channel_id: str) -> str:
        adapter = self._channels.get(channel_id)
        return adapter.channel_type if adapter is not None else UNKNOWN_CHANNEL_TYPE

    async def _new_records(
        self,
        owner_id: str,
        channels: tuple[str, ...],
        *,
        alert_id: str | None,
        rule_id: str | None,
        batch_id: str | None,
    ) -> list[DeliveryRecord]:
        records = []
        for channel_id in channels:
            record = DeliveryRecord(
                alert_id=alert_id,
                rule_id=rule_id,
                batch_id=batch_id,
                channel_id=channel_id,
                channel_type=self._channel_type(channel_id),
                created_at=self._now(),
            )
            self._records[record.id] = record
            self._by_owner.setdefault(owner_id, []).append(record.id)
            DELIVERY_TRANSITIONS.labels(
                channel_type=record.channel_type, status=record.status.value
            ).inc()
            await self._persist(record)
            records.append(record)
        return records

    async def create_records(self, alert: PendingAlert) -> list[DeliveryRecord]:
        """Create pending records for an alert without queueing them.

        Args:
            alert: Alert to deliver.

        Returns:
            One record per target channel.
        """
        self._messages[alert.id] = self.formatter.format(alert)
        return await self._new_records(
            alert.id, alert.channels, alert_id=alert.id, rule_id=alert.rule_id, batch_id=None
        )

    async def dispatch(self, alert: PendingAlert) -> list[DeliveryRecord]:
        """Create one record per channel and queue them for delivery."""
        records = await self.create_records(alert)
        for record in records:
            self._queue(record)
        logger.debug("Dispatched alert %s to %d channels", alert.id, len(records))
        return records

    async def release(self, alert_id: str) -> list[DeliveryRecord]:
        """Queue the pending records of an alert created earlier."""
        released = []
        for record in self.records_for(alert_id):
            if record.status is DeliveryStatus.PENDING:
                self._queue(record)
                released.append(record)
        return released

    async def dispatch_batch(self, batch: Batch) -> list[DeliveryRecord]:
        """Deliver a batch, superseding its constituents' own records.

        Args:
            batch: Batch produced by the batcher.

        Returns:
            The batch's delivery records.
        """
        for alert_id in batch.alert_ids:
            await self.cancel_for_alert(alert_id)

        self._messages[batch.id] = self.formatter.format_batch(batch)
        records = await self._new_records(
            batch.id, batch.channels, alert_id=None, rule_id=None, batch_id=batch.id
        )
        for record in records:
            self._queue(record)
        logger.info(
            "Dispatched batch %s (%d alerts) to %d channels",
            batch.id,
            len(batch.alerts),
            len(records),
        )
        return records

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, record_id: str) -> bool:
        """Cancel a live record. Returns False if unknown or already terminal."""
        record = self._records.get(record_id)
        if record is None or record.status.is_terminal:
            return False
        self._mark_cancelled(record)
        await self._persist(record)
        return True

    def _mark_cancelled(self, record: DeliveryRecord) -> None:
        self._transition(record, DeliveryStatus.CANCELLED)
        record.next_retry_at = None
        self._release_message_if_done(record)

    async def cancel_for_alert(self, alert_id: str) -> int:
        """Cancel every live record of an alert; returns how many were cancelled."""
        cancelled = 0
        for record in self.records_for(alert_id):
            if await self.cancel(record.id):
                cancelled += 1
        return cancelled

    def cancel_for_rule(self, rule_id: str) -> int:
        """Cancel the pending and retrying records of a rule's alerts.

        Called when a rule is disabled or deleted. Attempts already in
        flight finish normally. Batch records carry no rule id and are left
        alone. The state change is immediate; persisting it to the delivery
        log runs as a tracked task that ``drain`` waits for.

        Returns:
            Number of records cancelled.
        """
        records = [
            r
            for r in self._records.values()
            if r.rule_id == rule_id
            and r.status in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)
        ]
        for record in records:
            self._mark_cancelled(record)
        if records and self._delivery_log is not None:
            self._track(self._persist_all(records))
        if records:
            logger.info("Cancelled %d deliveries of rule %s", len(records), rule_id)
        return len(records)

    async def _persist_all(self, records: list[DeliveryRecord]) -> None:
        for record in records:
            await self._persist(record)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _type_semaphore(self, channel_type: str) -> asyncio.Semaphore:
        semaphore = self._type_semaphores.get(channel_type)
        if semaphore is None:
            limit = self._type_limits.get(channel_type, self._default_type_limit)
            semaphore = asyncio.Semaphore(limit)
            self._type_semaphores[channel_type] = semaphore
        return semaphore

    def _queue(self, record: DeliveryRecord) -> None:
        self._track(self._attempt(record.id))

    def _track(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _transition(self, record: DeliveryRecord, status: DeliveryStatus) -> None:
        record.transition(status)
        DELIVERY_TRANSITIONS.labels(channel_type=record.channel_type, status=status.value).inc()

    async def _persist(self, record: DeliveryRecord) -> None:
        if self._delivery_log is None:
            return
        try:
            await self._delivery_log.record(record)
        except Exception as e:
            logger.error(f"Failed to persist delivery record {record.id}: {e}")

    async def _attempt(self, record_id: str) -> None:
        record = self._records.get(record_id)
        if record is None or record.status not in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING):
            return

        adapter = self._channels.get(record.channel_id)
        async with self._semaphore, self._type_semaphore(record.channel_type):
            # May have been cancelled while waiting for a slot
            if record.status not in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING):
                return
            self._transition(record, DeliveryStatus.SENDING)
            record.sent_at = self._now()
            record.next_retry_at = None

            message = self._messages.get(record.message_key)
            if adapter is None:
                result = SendResult.fail(f"Unknown channel: {record.channel_id}")
            elif message is None:
                result = SendResult.fail("No message for record")
            else:
                try:
                    result = await adapter.send(record, message)
                except Exception as e:
                    logger.error(f"Adapter {record.channel_id} raised: {e}")
                    result = SendResult.retry(str(e) or type(e).__name__)

        if record.status is DeliveryStatus.CANCELLED:
            return
        await self._apply_result(record, result)

    async def _apply_result(self, record: DeliveryRecord, result: SendResult) -> None:
        if result.ok:
            self._transition(record, DeliveryStatus.SENT)
            record.delivered_at = self._now()
            record.last_error = None
            latency = (record.delivered_at - record.created_at).total_seconds()
            self._latencies.append(latency)
            del self._latencies[:-1000]
            DELIVERY_LATENCY.labels(channel_type=record.channel_type).observe(latency)
            logger.info(
                "Delivery %s to %s succeeded after %d retries",
                record.id,
                record.channel_id,
                record.retry_count,
            )
        elif result.retryable and record.retry_count + 1 < self.retry_policy.max_attempts:
            self._transition(record, DeliveryStatus.RETRYING)
            record.retry_count += 1
            record.last_error = result.error
            delay = self.retry_policy.delay_for(record.retry_count) * self._jitter()
            record.next_retry_at = self._now() + timedelta(seconds=delay)
            heapq.heappush(self._retry_heap, (record.next_retry_at, next(self._seq), record.id))
            logger.warning(
                "Delivery %s to %s failed (retry %d in %.1fs): %s",
                record.id,
                record.channel_id,
                record.retry_count,
                delay,
                result.error,
            )
        else:
            self._transition(record, DeliveryStatus.FAILED)
            record.last_error = result.error
            logger.error(
                "Delivery %s to %s failed permanently: %s",
                record.id,
                record.channel_id,
                result.error,
            )
        await self._persist(record)
        self._release_message_if_done(record)

    def _release_message_if_done(self, record: DeliveryRecord) -> None:
        owner = record.message_key
        if all(r.status.is_terminal for r in self.records_for(owner)):
            self._messages.pop(owner, None)

    async def run_due_retries(self) -> int:
        """Queue every retrying record whose ``next_retry_at`` has passed.

        Returns:
            Number of records queued.
        """
        now = self._now()
        queued = 0
        while self._retry_heap and self._retry_heap[0][0] <= now:
            due_at, _, record_id = heapq.heappop(self._retry_heap)
            record = self._records.get(record_id)
            if (
                record is None
                or record.status is not DeliveryStatus.RETRYING
                or record.next_retry_at != due_at
            ):
                continue
            self._queue(record)
            queued += 1
        return queued

    # ------------------------------------------------------------------
    # Housekeeping and stats
    # ------------------------------------------------------------------

    def prune(self, older_than_seconds: float = 3600.0) -> int:
        """Forget terminal records created before the cutoff."""
        cutoff = self._now() - timedelta(seconds=older_than_seconds)
        stale = [
            r.id for r in self._records.values() if r.status.is_terminal and r.created_at < cutoff
        ]
        for record_id in stale:
            record = self._records.pop(record_id)
            owner = record.message_key
            remaining = [r for r in self._by_owner.get(owner, []) if r != record_id]
            if remaining:
                self._by_owner[owner] = remaining
            else:
                self._by_owner.pop(owner, None)
                self._messages.pop(owner, None)
        return len(stale)

    def get_stats(self) -> DeliveryStats:
        """Counts by status and by channel."""
        by_status = Counter(r.status.value for r in self._records.values())
        by_channel: dict[str, ChannelStats] = {}
        for record in self._records.values():
            stats = by_channel.setdefault(record.channel_id, ChannelStats())
            stats.total += 1
            if record.status is DeliveryStatus.SENT:
                stats.sent += 1
            elif record.status is DeliveryStatus.FAILED:
                stats.failed += 1
        avg = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
        return DeliveryStats(
            total=len(self._records),
            by_status=dict(by_status),
            by_channel=by_channel,
            avg_delivery_seconds=avg,
        )
