"""Tests for the delivery scheduler and its retry state machine."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from token_alert_hub.alerter.batcher import generate_summary
from token_alert_hub.alerter.models import (
    Batch,
    DeliveryRecord,
    DeliveryStatus,
    FormattedAlert,
    SendResult,
)
from token_alert_hub.alerter.scheduler import DeliveryScheduler, RetryPolicy
from token_alert_hub.rules.models import AlertType, PendingAlert, Priority

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class InFlight:
    """Counts concurrent sends across channels."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0


class FakeChannel:
    """Channel adapter returning scripted results."""

    def __init__(
        self,
        channel_id: str = "discord",
        results: list[SendResult] | None = None,
        channel_type: str = "discord",
        in_flight: InFlight | None = None,
    ) -> None:
        self.channel_id = channel_id
        self.channel_type = channel_type
        self.results = list(results or [])
        self.calls: list[tuple[DeliveryRecord, FormattedAlert]] = []
        self.in_flight = in_flight or InFlight()

    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        self.calls.append((record, message))
        self.in_flight.current += 1
        self.in_flight.peak = max(self.in_flight.peak, self.in_flight.current)
        await asyncio.sleep(0)
        self.in_flight.current -= 1
        if self.results:
            return self.results.pop(0)
        return SendResult.success()


class RaisingChannel(FakeChannel):
    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        self.calls.append((record, message))
        if len(self.calls) == 1:
            raise ConnectionError("reset by peer")
        return SendResult.success()


def make_alert(
    alert_id: str = "alert-1",
    channels: tuple[str, ...] = ("discord",),
    alert_type: AlertType = AlertType.VOLUME_SPIKE,
    rule_id: str = "rule-1",
) -> PendingAlert:
    return PendingAlert(
        id=alert_id,
        rule_id=rule_id,
        rule_name="Volume spike",
        identity="So11111111111111111111111111111111111111112",
        alert_type=alert_type,
        priority=Priority.NORMAL,
        title="Volume spike",
        message="volume_24h > 1000",
        reasons=("volume_24h > 1000",),
        channels=channels,
        dedup_key=alert_id,
        data={"volume_24h": 5000},
        symbol="WIF",
        created_at=NOW,
    )


def make_scheduler(channels: list[FakeChannel], **kwargs: object) -> DeliveryScheduler:
    params: dict = {
        "retry_policy": RetryPolicy(base_delay=0, max_attempts=5),
        "now": lambda: NOW,
        "jitter": lambda: 1.0,
    }
    params.update(kwargs)
    return DeliveryScheduler(channels, **params)


async def run_until_settled(scheduler: DeliveryScheduler) -> None:
    """Drive attempts and due retries until nothing is left to do."""
    await scheduler.drain()
    while await scheduler.run_due_retries():
        await scheduler.drain()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def delivery_log() -> MagicMock:
    log = MagicMock()
    log.record = AsyncMock()
    return log


# ============================================================================
# RetryPolicy Tests
# ============================================================================


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_doubles_until_cap(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
        assert policy.delay_for(10) == 30.0


# ============================================================================
# Delivery Tests
# ============================================================================


class TestDispatch:
    """Tests for first-attempt delivery."""

    async def test_successful_delivery(self) -> None:
        channel = FakeChannel()
        scheduler = make_scheduler([channel])

        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert len(records) == 1
        record = records[0]
        assert record.status is DeliveryStatus.SENT
        assert record.retry_count == 0
        assert record.delivered_at == NOW
        assert record.channel_type == "discord"
        assert len(channel.calls) == 1
        assert channel.calls[0][1].title

    async def test_one_record_per_channel(self) -> None:
        discord = FakeChannel("discord")
        webhook = FakeChannel("webhook", channel_type="webhook")
        scheduler = make_scheduler([discord, webhook])

        records = await scheduler.dispatch(make_alert(channels=("discord", "webhook")))
        await run_until_settled(scheduler)

        assert {r.channel_id for r in records} == {"discord", "webhook"}
        assert all(r.status is DeliveryStatus.SENT for r in records)
        assert len({r.id for r in records}) == 2

    async def test_unknown_channel_fails(self) -> None:
        scheduler = make_scheduler([FakeChannel()])

        records = await scheduler.dispatch(make_alert(channels=("slack",)))
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.FAILED
        assert records[0].channel_type == "unknown"
        assert "slack" in (records[0].last_error or "")

    async def test_delivery_log_sees_every_state(self, delivery_log: MagicMock) -> None:
        scheduler = make_scheduler([FakeChannel()], delivery_log=delivery_log)

        await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        # created, then terminal
        assert delivery_log.record.await_count == 2

    async def test_delivery_log_errors_are_logged(self, delivery_log: MagicMock) -> None:
        delivery_log.record.side_effect = RuntimeError("db down")
        scheduler = make_scheduler([FakeChannel()], delivery_log=delivery_log)

        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.SENT


class TestRetries:
    """Tests for the retry state machine."""

    async def test_retries_then_succeeds(self) -> None:
        channel = FakeChannel(results=[SendResult.retry("HTTP 503")] * 3)
        scheduler = make_scheduler([channel])

        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        record = records[0]
        assert record.status is DeliveryStatus.SENT
        assert record.retry_count == 3
        assert record.last_error is None
        assert len(channel.calls) == 4
        # Same record id on every attempt
        assert {r.id for r, _ in channel.calls} == {record.id}

    async def test_channels_retry_independently(self) -> None:
        discord = FakeChannel(results=[SendResult.retry("HTTP 503")] * 3)
        webhook = FakeChannel(
            "webhook", results=[SendResult.fail("HTTP 400")], channel_type="webhook"
        )
        scheduler = make_scheduler([discord, webhook])

        records = await scheduler.dispatch(make_alert(channels=("discord", "webhook")))
        by_channel = {r.channel_id: r for r in records}
        await scheduler.drain()

        # The terminal webhook failure does not wait on discord's retries
        assert by_channel["webhook"].status is DeliveryStatus.FAILED
        assert by_channel["discord"].status is DeliveryStatus.RETRYING

        await run_until_settled(scheduler)

        assert by_channel["discord"].status is DeliveryStatus.SENT
        assert by_channel["discord"].retry_count == 3
        assert len(discord.calls) == 4
        assert by_channel["webhook"].status is DeliveryStatus.FAILED
        assert by_channel["webhook"].retry_count == 0
        assert by_channel["webhook"].last_error == "HTTP 400"
        assert len(webhook.calls) == 1

    async def test_gives_up_after_max_attempts(self) -> None:
        channel = FakeChannel(results=[SendResult.retry("timeout")] * 10)
        scheduler = make_scheduler([channel], retry_policy=RetryPolicy(base_delay=0, max_attempts=3))

        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.FAILED
        assert records[0].last_error == "timeout"
        assert len(channel.calls) == 3

    async def test_non_retryable_fails_immediately(self) -> None:
        channel = FakeChannel(results=[SendResult.fail("HTTP 400")])
        scheduler = make_scheduler([channel])

        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.FAILED
        assert records[0].retry_count == 0
        assert len(channel.calls) == 1

    async def test_adapter_exception_is_retryable(self) -> None:
        channel = RaisingChannel()
        scheduler = make_scheduler([channel])

        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.SENT
        assert records[0].retry_count == 1

    async def test_backoff_schedules_next_retry(self) -> None:
        channel = FakeChannel(results=[SendResult.retry("HTTP 429")])
        scheduler = make_scheduler(
            [channel], retry_policy=RetryPolicy(base_delay=2.0), jitter=lambda: 1.5
        )

        records = await scheduler.dispatch(make_alert())
        await scheduler.drain()

        record = records[0]
        assert record.status is DeliveryStatus.RETRYING
        assert record.next_retry_at == NOW + timedelta(seconds=3)
        # Not due yet
        assert await scheduler.run_due_retries() == 0


class TestCancellation:
    """Tests for cancelling records."""

    async def test_cancel_pending(self) -> None:
        channel = FakeChannel()
        scheduler = make_scheduler([channel])

        records = await scheduler.create_records(make_alert())
        assert await scheduler.cancel(records[0].id) is True
        assert await scheduler.release("alert-1") == []
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.CANCELLED
        assert channel.calls == []

    async def test_cancel_retrying_is_not_retried(self) -> None:
        channel = FakeChannel(results=[SendResult.retry("HTTP 500")])
        scheduler = make_scheduler([channel])

        records = await scheduler.dispatch(make_alert())
        await scheduler.drain()
        assert await scheduler.cancel_for_alert("alert-1") == 1
        await run_until_settled(scheduler)

        assert records[0].status is DeliveryStatus.CANCELLED
        assert len(channel.calls) == 1

    async def test_cancel_for_rule(self, delivery_log: MagicMock) -> None:
        channel = FakeChannel(results=[SendResult.retry("HTTP 500")])
        scheduler = make_scheduler([channel], delivery_log=delivery_log)

        retrying = await scheduler.dispatch(make_alert("alert-1"))
        await scheduler.drain()
        pending = await scheduler.create_records(make_alert("alert-2"))
        other = await scheduler.create_records(make_alert("alert-3", rule_id="rule-2"))
        delivery_log.record.reset_mock()

        assert scheduler.cancel_for_rule("rule-1") == 2
        await scheduler.drain()

        assert retrying[0].status is DeliveryStatus.CANCELLED
        assert pending[0].status is DeliveryStatus.CANCELLED
        assert other[0].status is DeliveryStatus.PENDING
        assert delivery_log.record.await_count == 2

        await scheduler.release("alert-2")
        await scheduler.release("alert-3")
        await run_until_settled(scheduler)
        assert [r.alert_id for r, _ in channel.calls] == ["alert-1", "alert-3"]

    async def test_cancel_for_rule_leaves_terminal_records(self) -> None:
        scheduler = make_scheduler([FakeChannel()])
        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert scheduler.cancel_for_rule("rule-1") == 0
        assert records[0].status is DeliveryStatus.SENT

    async def test_cancel_terminal_is_rejected(self) -> None:
        scheduler = make_scheduler([FakeChannel()])
        records = await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)

        assert await scheduler.cancel(records[0].id) is False
        assert await scheduler.cancel("missing") is False


class TestBatches:
    """Tests for batch delivery."""

    async def test_batch_supersedes_constituents(self) -> None:
        channel = FakeChannel()
        scheduler = make_scheduler([channel])
        alerts = [make_alert("a1"), make_alert("a2")]
        for alert in alerts:
            await scheduler.create_records(alert)

        batch = Batch(
            alert_type=AlertType.VOLUME_SPIKE,
            priority=Priority.NORMAL,
            alerts=alerts,
            summary=generate_summary(AlertType.VOLUME_SPIKE, 2),
        )
        batch_records = await scheduler.dispatch_batch(batch)
        await run_until_settled(scheduler)

        assert all(r.status is DeliveryStatus.CANCELLED for r in scheduler.records_for("a1"))
        assert all(r.status is DeliveryStatus.CANCELLED for r in scheduler.records_for("a2"))
        assert len(batch_records) == 1
        assert batch_records[0].batch_id == batch.id
        assert batch_records[0].alert_id is None
        assert batch_records[0].status is DeliveryStatus.SENT
        assert len(channel.calls) == 1


class TestConcurrency:
    """Tests for concurrency limits."""

    async def test_channel_type_limit(self) -> None:
        in_flight = InFlight()
        channels = [
            FakeChannel(f"hook-{i}", channel_type="webhook", in_flight=in_flight) for i in range(3)
        ]
        scheduler = make_scheduler(channels, default_channel_type_concurrency=1)

        await scheduler.dispatch(make_alert(channels=("hook-0", "hook-1", "hook-2")))
        await run_until_settled(scheduler)

        assert in_flight.peak == 1
        assert all(len(c.calls) == 1 for c in channels)

    async def test_without_limit_sends_overlap(self) -> None:
        in_flight = InFlight()
        channels = [
            FakeChannel(f"hook-{i}", channel_type="webhook", in_flight=in_flight) for i in range(3)
        ]
        scheduler = make_scheduler(channels, default_channel_type_concurrency=3)

        await scheduler.dispatch(make_alert(channels=("hook-0", "hook-1", "hook-2")))
        await run_until_settled(scheduler)

        assert in_flight.peak == 3


# ============================================================================
# Stats and housekeeping Tests
# ============================================================================


class TestStats:
    """Tests for delivery statistics."""

    async def test_stats(self) -> None:
        good = FakeChannel("discord")
        bad = FakeChannel("webhook", results=[SendResult.fail("HTTP 404")], channel_type="webhook")
        scheduler = make_scheduler([good, bad])

        await scheduler.dispatch(make_alert(channels=("discord", "webhook")))
        await run_until_settled(scheduler)
        stats = scheduler.get_stats()

        assert stats.total == 2
        assert stats.by_status == {"sent": 1, "failed": 1}
        assert stats.by_channel["discord"].sent == 1
        assert stats.by_channel["webhook"].failed == 1
        assert stats.success_rate == 0.5

    async def test_prune_forgets_old_terminal_records(self) -> None:
        clock = {"now": NOW}
        scheduler = make_scheduler([FakeChannel()], now=lambda: clock["now"])

        await scheduler.dispatch(make_alert())
        await run_until_settled(scheduler)
        clock["now"] = NOW + timedelta(hours=2)

        assert scheduler.prune(older_than_seconds=3600) == 1
        assert scheduler.records_for("alert-1") == []

    async def test_start_stop(self) -> None:
        scheduler = make_scheduler([FakeChannel()], retry_poll_interval=0.01)
        await scheduler.start()
        assert scheduler.is_running
        await scheduler.stop(timeout=1)
        assert not scheduler.is_running
