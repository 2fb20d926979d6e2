"""Rule engine: turns incoming events into pending alerts.

For every event the engine takes a fresh snapshot of the enabled rules,
evaluates each rule on its own, and for matches consults the rate limiter and
the dedup store before emitting a PendingAlert. Checks for the same rule are
serialized by a per-rule lock so concurrent events cannot both slip through a
limit meant for one.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from token_alert_hub.alerter.dedup import DedupStore, MemoryDedupStore, build_dedup_key
from token_alert_hub.alerter.ratelimit import RateLimiter
from token_alert_hub.metrics import EVALUATION_LATENCY, EVENTS_TOTAL, RULE_OUTCOMES
from token_alert_hub.rules.evaluator import evaluate
from token_alert_hub.rules.models import Event, MatchResult, PendingAlert, Rule

if TYPE_CHECKING:
    from token_alert_hub.alerter.dedup import NearDuplicateFilter
    from token_alert_hub.rules.store import RuleStore

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 300.0
MAX_REASONS_IN_MESSAGE = 5


@dataclass
class EngineStats:
    """Counters describing what the engine has done."""

    events_processed: int = 0
    rules_evaluated: int = 0
    matched: int = 0
    fired: int = 0
    rate_limited: int = 0
    deduplicated: int = 0
    errors: int = 0


class _TemplateValues(dict[str, Any]):
    """Mapping for str.format_map that renders unknown placeholders empty."""

    def __missing__(self, key: str) -> str:
        return ""


def render_message(rule: Rule, event: Event, result: MatchResult) -> str:
    """Render the alert message for a rule match.

    Rules with a template get it filled from the event fields plus ``name``,
    ``identity``, ``symbol`` and ``reasons``. Rules without one get a default
    listing the matched conditions.
    """
    if rule.message:
        values = _TemplateValues(
            {k: v for k, v in event.data.items() if isinstance(k, str)}
        )
        values.update(
            name=rule.name,
            identity=event.identity,
            symbol=event.symbol or "",
            reasons=", ".join(result.reasons),
        )
        try:
            return rule.message.format_map(values)
        except (ValueError, IndexError, AttributeError, KeyError, TypeError) as e:
            logger.warning("Bad message template on rule %s: %s", rule.id, e)
            return rule.message

    lines = [rule.description or rule.name]
    if result.reasons:
        lines.append("")
        lines.append("Matched:")
        for reason in result.reasons[:MAX_REASONS_IN_MESSAGE]:
            lines.append(f"  • {reason}")
        extra = len(result.reasons) - MAX_REASONS_IN_MESSAGE
        if extra > 0:
            lines.append(f"  ... and {extra} more")
    if event.symbol:
        lines.append("")
        lines.append(f"Token: {event.symbol} ({event.identity[:8]}...)")
    return "\n".join(lines)


class RuleEngine:
    """Evaluates the active rule set against each incoming event.

    Example:
        ```python
        store = InMemoryRuleStore([rule])
        engine = RuleEngine(store)

        alerts = await engine.process(event)
        for alert in alerts:
            await scheduler.dispatch(alert)
        ```
    """

    def __init__(
        self,
        store: RuleStore,
        *,
        rate_limiter: RateLimiter | None = None,
        dedup_store: DedupStore | None = None,
        dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        dedup_bucket_seconds: float | None = None,
        near_duplicates: NearDuplicateFilter | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the engine.

        Args:
            store: Source of the active rule set.
            rate_limiter: Per-rule cooldown and hourly cap tracker.
            dedup_store: Store used to suppress repeated alerts.
            dedup_window_seconds: How long a fired alert suppresses repeats.
            dedup_bucket_seconds: Optional coarse time bucket mixed into dedup keys.
            near_duplicates: Optional similarity-based suppression.
            now: Wall clock used for alert timestamps.
        """
        self._store = store
        self.rate_limiter = rate_limiter or RateLimiter()
        self.dedup_store: DedupStore = dedup_store or MemoryDedupStore()
        self.dedup_window_seconds = dedup_window_seconds
        self.dedup_bucket_seconds = dedup_bucket_seconds
        self.near_duplicates = near_duplicates
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}
        self._stats = EngineStats()

    @property
    def stats(self) -> EngineStats:
        """Engine counters."""
        return self._stats

    def _lock_for(self, rule_id: str) -> asyncio.Lock:
        return self._locks.setdefault(rule_id, asyncio.Lock())

    def forget_rule(self, rule_id: str) -> None:
        """Drop per-rule state after a rule has been disabled or deleted."""
        self._locks.pop(rule_id, None)
        self.rate_limiter.forget(rule_id)

    def _bucket(self, event: Event) -> int | None:
        if not self.dedup_bucket_seconds:
            return None
        return int(event.timestamp.timestamp() // self.dedup_bucket_seconds)

    def _build_alert(
        self, rule: Rule, event: Event, result: MatchResult, dedup_key: str
    ) -> PendingAlert:
        return PendingAlert(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            rule_name=rule.name,
            identity=event.identity,
            alert_type=rule.alert_type,
            priority=rule.priority,
            title=rule.name,
            message=render_message(rule, event, result),
            reasons=result.reasons,
            channels=rule.channels,
            dedup_key=dedup_key,
            data=dict(event.data),
            symbol=event.symbol,
            created_at=self._now(),
        )

    async def _process_rule(self, rule: Rule, event: Event) -> PendingAlert | None:
        if not rule.enabled:
            return None

        self._stats.rules_evaluated += 1
        result = evaluate(event, rule.condition)
        if not result.matched:
            return None
        self._stats.matched += 1

        async with self._lock_for(rule.id):
            decision = self.rate_limiter.try_acquire(
                rule.id, rule.cooldown_seconds, rule.max_alerts_per_hour
            )
            if not decision:
                self._stats.rate_limited += 1
                RULE_OUTCOMES.labels(outcome="rate_limited").inc()
                logger.debug("Rule %s suppressed (%s)", rule.name, decision.reason)
                return None

            dedup_key = build_dedup_key(
                rule.id, event.identity, result.reasons, bucket=self._bucket(event)
            )
            if await self.dedup_store.should_suppress(dedup_key, self.dedup_window_seconds):
                self._stats.deduplicated += 1
                RULE_OUTCOMES.labels(outcome="deduplicated").inc()
                return None

            alert = self._build_alert(rule, event, result, dedup_key)

            if self.near_duplicates is not None:
                score = await self.near_duplicates.check_and_record(alert)
                if score is not None:
                    self._stats.deduplicated += 1
                    RULE_OUTCOMES.labels(outcome="near_duplicate").inc()
                    logger.debug("Rule %s near-duplicate (similarity %.2f)", rule.name, score)
                    return None

            self.rate_limiter.record(rule.id)

        await self._store.record_trigger(rule.id, alert.created_at)
        self._stats.fired += 1
        RULE_OUTCOMES.labels(outcome="fired").inc()
        logger.info(
            "Rule \"%s\" triggered for %s", rule.name, event.symbol or event.identity
        )
        return alert

    async def process(self, event: Event) -> list[PendingAlert]:
        """Evaluate all enabled rules against an event.

        Args:
            event: Incoming event snapshot.

        Returns:
            One PendingAlert per rule that fired, in rule order.
        """
        started = time.perf_counter()
        rules = await self._store.list_enabled()
        self._stats.events_processed += 1
        EVENTS_TOTAL.labels(event_type=event.event_type).inc()

        alerts: list[PendingAlert] = []
        for rule in rules:
            try:
                alert = await self._process_rule(rule, event)
            except Exception as e:
                self._stats.errors += 1
                RULE_OUTCOMES.labels(outcome="error").inc()
                logger.error("Error evaluating rule %s: %s", rule.id, e)
                continue
            if alert is not None:
                alerts.append(alert)

        EVALUATION_LATENCY.observe(time.perf_counter() - started)
        return alerts
