"""Main pipeline orchestrator for the Token Alert Hub.

This module provides the Pipeline class that wires the rule engine, the
batcher, the delivery scheduler and the broadcast hub together and manages
the event flow from the Redis event stream to every client.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from redis.asyncio import Redis

from token_alert_hub.alerter.batcher import AlertBatcher
from token_alert_hub.alerter.channels.discord import DiscordChannel
from token_alert_hub.alerter.channels.telegram import TelegramChannel
from token_alert_hub.alerter.channels.webhook import WebhookChannel
from token_alert_hub.alerter.dedup import DedupStore, MemoryDedupStore, RedisDedupStore
from token_alert_hub.alerter.formatter import AlertFormatter
from token_alert_hub.alerter.history import AlertHistory
from token_alert_hub.alerter.ratelimit import RateLimiter
from token_alert_hub.alerter.scheduler import ChannelAdapter, DeliveryScheduler, RetryPolicy
from token_alert_hub.config import Settings, get_settings
from token_alert_hub.health import HealthMonitor
from token_alert_hub.hub.auth import StaticCredentialValidator
from token_alert_hub.hub.server import BroadcastHub
from token_alert_hub.ingestor.stream import EventStream
from token_alert_hub.rules.engine import RuleEngine
from token_alert_hub.rules.store import InMemoryRuleStore, RetirementNotifier, RuleStore
from token_alert_hub.storage.database import DatabaseManager
from token_alert_hub.storage.repos import SqlDedupStore, SqlDeliveryLog, SqlRuleStore

if TYPE_CHECKING:
    from token_alert_hub.alerter.models import Batch
    from token_alert_hub.rules.models import Event, PendingAlert

logger = logging.getLogger(__name__)

FEED_COMPONENT = "event_feed"
DELIVERY_COMPONENT = "delivery"
HUB_COMPONENT = "hub"

# Slow housekeeping (database cleanup, history trimming) runs at most this often
DAILY_CLEANUP_INTERVAL = 3600.0
FEED_ERROR_BACKOFF = 1.0

T = TypeVar("T")


def _require(component: T | None) -> T:
    if component is None:
        raise RuntimeError("Pipeline components are not initialized")
    return component


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    events_processed: int = 0
    alerts_fired: int = 0
    alerts_batched: int = 0
    batches_sent: int = 0
    broadcasts: int = 0
    errors: int = 0
    last_event_time: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator.

    Pipeline flow:
        Event stream → Rule Engine → history + Broadcast Hub
                                   → Batcher → Delivery Scheduler → channels

    Collaborators can be passed in; anything left out is built from
    settings when the pipeline starts.

    Example:
        ```python
        pipeline = Pipeline(get_settings())
        await pipeline.start()
        ...
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        redis: Redis | None = None,
        rule_store: RuleStore | None = None,
        channels: list[ChannelAdapter] | None = None,
        hub: BroadcastHub | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, evaluate rules but send nothing. Overrides settings.dry_run.
            redis: Redis client to use instead of one built from settings.
            rule_store: Rule source to use instead of the configured one.
            channels: Channel adapters to use instead of the configured ones.
            hub: Broadcast hub to use instead of the configured one.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._redis = redis
        self._owns_redis = redis is None
        self._rule_store = rule_store
        self._channels = channels
        self.hub = hub

        # Built in _initialize_components()
        self._db_manager: DatabaseManager | None = None
        self._delivery_log: SqlDeliveryLog | None = None
        self.engine: RuleEngine | None = None
        self.scheduler: DeliveryScheduler | None = None
        self.batcher: AlertBatcher | None = None
        self.history: AlertHistory | None = None
        self.stream: EventStream | None = None
        self.health: HealthMonitor | None = None

        self._stop_event: asyncio.Event | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._housekeeping_task: asyncio.Task[None] | None = None
        self._last_slow_cleanup = 0.0

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def stats(self) -> PipelineStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, health_port: int | None = None) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services(health_port or self._settings.health_port)
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Pending batches are flushed and in-flight deliveries get a chance to
        finish before connections are closed.
        """
        if self._state in (PipelineState.STOPPED, PipelineState.STOPPING):
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def run(self) -> None:
        """Start the pipeline and block until stop() is called."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Component wiring
    # ------------------------------------------------------------------

    async def _initialize_components(self) -> None:
        """Build every collaborator that was not passed in."""
        settings = self._settings
        alerting = settings.alerting

        if self._redis is None:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if settings.database.enabled and self._db_manager is None:
            logger.debug("Initializing database...")
            self._db_manager = DatabaseManager(
                settings.database.url,  # type: ignore[arg-type]
                pool_size=settings.database.pool_size,
            )
            await self._db_manager.init_schema_async()
            self._delivery_log = SqlDeliveryLog(self._db_manager.get_async_session)

        if self._rule_store is None:
            self._rule_store = self._build_rule_store()

        self.engine = RuleEngine(
            self._rule_store,
            rate_limiter=RateLimiter(),
            dedup_store=self._build_dedup_store(),
            dedup_window_seconds=alerting.dedup_window_seconds,
            dedup_bucket_seconds=alerting.dedup_bucket_seconds,
        )

        if self._channels is None:
            self._channels = [] if self._dry_run else self._build_alert_channels()

        self.scheduler = DeliveryScheduler(
            self._channels,
            formatter=AlertFormatter(),
            retry_policy=RetryPolicy(
                base_delay=alerting.retry_base_delay,
                max_delay=alerting.retry_max_delay,
                max_attempts=alerting.retry_max_attempts,
            ),
            max_concurrency=alerting.max_concurrency,
            default_channel_type_concurrency=alerting.channel_type_concurrency,
            delivery_log=self._delivery_log,
        )

        self.batcher = AlertBatcher(
            on_single=self._release_single,
            on_batch=self._deliver_batch,
            window_seconds=alerting.batch_window_seconds,
            max_size=alerting.batch_max_size,
            min_size=alerting.batch_min_size,
            enabled=alerting.batch_enabled,
        )

        if alerting.history_enabled:
            self.history = AlertHistory(self._redis, retention_days=alerting.history_retention_days)

        if self.hub is None and settings.hub.enabled:
            api_keys = settings.hub.api_keys.get_secret_value() if settings.hub.api_keys else ""
            if not api_keys:
                logger.warning("HUB_API_KEYS not set; no client will be able to authenticate")
            self.hub = BroadcastHub(
                StaticCredentialValidator.from_setting(api_keys),
                ping_interval=settings.hub.ping_interval,
                max_missed_pongs=settings.hub.max_missed_pongs,
                path=settings.hub.path,
            )

        if isinstance(self._rule_store, RetirementNotifier):
            self._rule_store.add_retire_listener(self.retire_rule)

        self.stream = EventStream(self._redis, settings.redis.stream_name)
        self.health = HealthMonitor(details=self._health_details)

    def _build_rule_store(self) -> RuleStore:
        if self._db_manager is not None:
            logger.info("Loading rules from the database")
            return SqlRuleStore(self._db_manager.get_async_session)
        if self._settings.alerting.rules_file:
            return InMemoryRuleStore.from_file(self._settings.alerting.rules_file)
        logger.warning("No rule source configured; starting with an empty rule set")
        return InMemoryRuleStore()

    def _build_dedup_store(self) -> DedupStore:
        backend = self._settings.alerting.dedup_backend
        if backend == "redis":
            return RedisDedupStore(self._redis)
        if backend == "sql":
            if self._db_manager is not None:
                return SqlDedupStore(self._db_manager.get_async_session)
            logger.warning("Dedup backend 'sql' needs DATABASE_URL; using in-memory store")
        return MemoryDedupStore()

    def _build_alert_channels(self) -> list[ChannelAdapter]:
        """Build list of enabled alert channels."""
        channels: list[ChannelAdapter] = []
        settings = self._settings

        if settings.discord.enabled and settings.discord.webhook_url:
            channels.append(
                DiscordChannel(
                    settings.discord.webhook_url.get_secret_value(),
                    username=settings.discord.username,
                )
            )
            logger.info("Discord channel enabled")

        if settings.telegram.enabled:
            bot_token = settings.telegram.bot_token
            chat_id = settings.telegram.chat_id
            if bot_token and chat_id:
                channels.append(TelegramChannel(bot_token.get_secret_value(), chat_id))
                logger.info("Telegram channel enabled")

        if settings.webhook.enabled and settings.webhook.url:
            headers = {}
            if settings.webhook.auth_header:
                headers["Authorization"] = settings.webhook.auth_header.get_secret_value()
            channels.append(WebhookChannel(settings.webhook.url.get_secret_value(), headers=headers))
            logger.info("Webhook channel enabled")

        if not channels:
            logger.warning("No alert channels configured")

        return channels

    def _health_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "state": self._state.value,
            "events_processed": self._stats.events_processed,
            "alerts_fired": self._stats.alerts_fired,
            "dry_run": self._dry_run,
        }
        if self.scheduler is not None:
            delivery = self.scheduler.get_stats()
            details["delivery"] = {
                "total": delivery.total,
                "by_status": delivery.by_status,
                "success_rate": round(delivery.success_rate, 3),
            }
        if self.batcher is not None:
            details["batched_pending"] = self.batcher.pending_count
        if self.hub is not None:
            details["hub_connections"] = self.hub.connection_count
        return details

    # ------------------------------------------------------------------
    # Event flow
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> list[PendingAlert]:
        """Evaluate one event and route every alert it produces.

        Returns:
            The alerts that fired.
        """
        if self.engine is None:
            raise RuntimeError("Pipeline components are not initialized")

        alerts = await self.engine.process(event)
        self._stats.events_processed += 1
        self._stats.last_event_time = datetime.now(UTC)

        for alert in alerts:
            try:
                await self._route(alert)
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.error("Failed to route alert %s: %s", alert.id, e)
        return alerts

    async def _route(self, alert: PendingAlert) -> None:
        self._stats.alerts_fired += 1

        if self.history is not None:
            try:
                await self.history.record(alert)
            except Exception as e:
                logger.error("Failed to record alert history: %s", e)

        if self._dry_run:
            logger.info(
                "[DRY RUN] Would send alert %s (%s) to %s",
                alert.title,
                alert.priority.value,
                ", ".join(alert.channels),
            )
            return

        # Live clients see every alert immediately, batched or not
        if self.hub is not None:
            self._stats.broadcasts += 1
            await self.hub.broadcast_alert(alert.to_payload())

        scheduler = _require(self.scheduler)
        batcher = _require(self.batcher)
        await scheduler.create_records(alert)
        if await batcher.add(alert):
            self._stats.alerts_batched += 1
        else:
            await scheduler.release(alert.id)

    def retire_rule(self, rule_id: str) -> int:
        """Withdraw everything a disabled or deleted rule still has queued.

        Drops the rule's rate-limit state and its alerts waiting in the
        batcher, then cancels its pending and retrying delivery records.
        Rule stores call this through their retirement listeners.

        Returns:
            Number of delivery records cancelled.
        """
        _require(self.engine).forget_rule(rule_id)
        dropped = _require(self.batcher).discard_rule(rule_id)
        cancelled = _require(self.scheduler).cancel_for_rule(rule_id)
        logger.info(
            "Retired rule %s: %d batched alerts dropped, %d deliveries cancelled",
            rule_id,
            len(dropped),
            cancelled,
        )
        return cancelled

    async def _release_single(self, alert: PendingAlert) -> None:
        await _require(self.scheduler).release(alert.id)

    async def _deliver_batch(self, batch: Batch) -> None:
        await _require(self.scheduler).dispatch_batch(batch)
        self._stats.batches_sent += 1
        if self._delivery_log is not None:
            try:
                await self._delivery_log.record_batch(batch)
            except Exception as e:
                logger.error("Failed to persist batch %s: %s", batch.id, e)

    # ------------------------------------------------------------------
    # Background services
    # ------------------------------------------------------------------

    async def _start_background_services(self, health_port: int) -> None:
        health = _require(self.health)
        await _require(self.scheduler).start()
        health.register_component(DELIVERY_COMPONENT, can_go_stale=False)
        health.set_component_up(DELIVERY_COMPONENT)

        if self.hub is not None and not self._dry_run:
            await self.hub.start(self._settings.hub.host, self._settings.hub.port)
            health.register_component(HUB_COMPONENT, can_go_stale=False)
            health.set_component_up(HUB_COMPONENT)

        await health.start()
        await health.start_http_server(port=health_port)

        self._feed_task = asyncio.create_task(self._run_event_feed())
        self._housekeeping_task = asyncio.create_task(self._run_housekeeping())

    async def _run_event_feed(self) -> None:
        """Consume the event stream until stopped."""
        stream = _require(self.stream)
        health = _require(self.health)
        redis_settings = self._settings.redis
        group = redis_settings.consumer_group
        consumer = redis_settings.consumer_name

        await stream.ensure_consumer_group(group)
        health.set_component_up(FEED_COMPONENT)

        # Entries delivered before a restart but never acknowledged come first
        backlog = await stream.read_pending(group, consumer, count=100)
        await self._process_entries(group, backlog)

        while self._stop_event is not None and not self._stop_event.is_set():
            try:
                entries = await stream.read_events(group, consumer)
                await self._process_entries(group, entries)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                health.set_component_down(FEED_COMPONENT, str(e))
                logger.error("Event feed error: %s", e)
                await asyncio.sleep(FEED_ERROR_BACKOFF)
                health.set_component_up(FEED_COMPONENT)

    async def _process_entries(self, group: str, entries: list[Any]) -> None:
        stream = _require(self.stream)
        health = _require(self.health)
        for entry in entries:
            try:
                await self.handle_event(entry.event)
            except Exception as e:
                # Left unacknowledged so it is retried from the pending list
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.error("Failed to process event %s: %s", entry.entry_id, e)
                continue
            await stream.ack(group, entry.entry_id)
            health.record_activity(FEED_COMPONENT)

    async def _run_housekeeping(self) -> None:
        """Periodic sweeps that keep in-memory state bounded."""
        interval = self._settings.alerting.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Housekeeping failed: %s", e)

    async def sweep(self) -> dict[str, int]:
        """Run one housekeeping pass.

        Returns:
            Number of entries removed per store.
        """
        engine = _require(self.engine)
        removed = {
            "dedup": await engine.dedup_store.sweep(),
            "rate_limiter": engine.rate_limiter.sweep(),
            "delivery_records": _require(self.scheduler).prune(),
        }
        if engine.near_duplicates is not None:
            removed["near_duplicates"] = await engine.near_duplicates.sweep()

        now = time.monotonic()
        if now - self._last_slow_cleanup >= DAILY_CLEANUP_INTERVAL:
            self._last_slow_cleanup = now
            if self._delivery_log is not None:
                removed["delivery_log"] = await self._delivery_log.cleanup(
                    self._settings.alerting.delivery_log_retention_days
                )
            if self.history is not None:
                removed["history"] = await self.history.cleanup_old_alerts()

        logger.debug("Housekeeping removed %s", removed)
        return removed

    async def _stop_background_services(self) -> None:
        for task in (self._feed_task, self._housekeeping_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._feed_task = None
        self._housekeeping_task = None

        if self.batcher is not None:
            logger.debug("Flushing pending batches...")
            await self.batcher.close()

        if self.scheduler is not None:
            await self.scheduler.stop()

        if self.hub is not None:
            await self.hub.stop()

        if self.health is not None:
            await self.health.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")
