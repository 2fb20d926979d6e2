"""Alert deduplication.

A dedup store answers one question atomically: has this key been seen within
its window? The first occurrence creates an entry that expires at
``now + window``; later occurrences are suppressed until then. Entries are not
extended by repeated hits.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from token_alert_hub.rules.models import PendingAlert

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def build_dedup_key(
    rule_id: str,
    identity: str,
    reasons: Iterable[str] = (),
    *,
    bucket: int | None = None,
) -> str:
    """Build a dedup key from rule, event identity and match context.

    Args:
        rule_id: Rule that matched.
        identity: Mint or wallet address of the event.
        reasons: Descriptions of the matched conditions.
        bucket: Optional coarse time bucket number.

    Returns:
        Hex sha256 digest.
    """
    parts = [rule_id, identity, *sorted(reasons)]
    if bucket is not None:
        parts.append(str(bucket))
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


class DedupStore(Protocol):
    """Atomic get-or-create store of dedup keys with expiry."""

    async def should_suppress(self, key: str, window: float) -> bool:
        """Return True if key is live, else create it and return False."""
        ...

    async def sweep(self) -> int:
        """Remove expired entries; returns the number removed."""
        ...


class MemoryDedupStore:
    """In-process dedup store.

    Entries live in a dict of key -> expiry. A single lock makes each
    check-and-insert atomic with respect to concurrent callers and sweeps.
    """

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._entries: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def should_suppress(self, key: str, window: float) -> bool:
        """Check a key, creating an entry on first occurrence.

        Args:
            key: Dedup key.
            window: Seconds the first occurrence suppresses duplicates for.

        Returns:
            True if a live entry exists (suppress), False otherwise.
        """
        async with self._lock:
            now = self._clock()
            expires_at = self._entries.get(key)
            if expires_at is not None and expires_at > now:
                logger.debug("Duplicate alert suppressed: %s", key[:12])
                return True
            self._entries[key] = now + window
            return False

    async def sweep(self) -> int:
        """Drop entries whose expiry has passed."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, exp in self._entries.items() if exp <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Swept %d expired dedup entries", len(expired))
        return len(expired)

    async def clear(self) -> None:
        """Remove all entries."""
        async with self._lock:
            self._entries.clear()


class RedisDedupStore:
    """Dedup store backed by Redis keys with a TTL.

    ``SET key 1 NX EX window`` is a single atomic get-or-create; expiry is
    handled by Redis so sweeping has nothing to do.
    """

    KEY_PREFIX = "alert:dedup:"

    def __init__(self, redis: Any) -> None:
        """Initialize the store.

        Args:
            redis: Redis client (async).
        """
        self.redis = redis

    async def should_suppress(self, key: str, window: float) -> bool:
        """Check a key, creating it with a TTL on first occurrence."""
        ttl_ms = max(1, int(window * 1000))
        created = await self.redis.set(f"{self.KEY_PREFIX}{key}", "1", nx=True, px=ttl_ms)
        if not created:
            logger.debug("Duplicate alert suppressed: %s", key[:12])
            return True
        return False

    async def sweep(self) -> int:
        """Nothing to do; Redis expires keys itself."""
        return 0


# ============================================================================
# Near-duplicate suppression
# ============================================================================


class SimilarityStrategy(Protocol):
    """Scores how alike two alerts are, from 0.0 (unrelated) to 1.0 (same)."""

    def similarity(self, candidate: PendingAlert, previous: PendingAlert) -> float:
        """Return a similarity score in [0, 1]."""
        ...


@dataclass
class _RecentAlert:
    alert: PendingAlert
    expires_at: float


class NearDuplicateFilter:
    """Suppress alerts that are similar, but not identical, to recent ones.

    Only alerts of the same rule and identity are compared. The similarity
    function is supplied by the caller.
    """

    def __init__(
        self,
        strategy: SimilarityStrategy,
        *,
        threshold: float = 0.9,
        window_seconds: float = 300,
        clock: Clock = time.monotonic,
    ) -> None:
        self.strategy = strategy
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._recent: dict[tuple[str, str], list[_RecentAlert]] = {}
        self._lock = asyncio.Lock()

    async def check_and_record(self, alert: PendingAlert) -> float | None:
        """Compare an alert with recent ones.

        Returns:
            The similarity score of the matching alert if the candidate is a
            near duplicate, None if it was accepted and recorded.
        """
        key = (alert.rule_id, alert.identity)
        async with self._lock:
            now = self._clock()
            recent = [r for r in self._recent.get(key, []) if r.expires_at > now]
            for entry in recent:
                try:
                    score = self.strategy.similarity(alert, entry.alert)
                except Exception as e:
                    logger.error("Similarity strategy failed: %s", e)
                    continue
                if score >= self.threshold:
                    self._recent[key] = recent
                    return score
            recent.append(_RecentAlert(alert=alert, expires_at=now + self.window_seconds))
            self._recent[key] = recent
            return None

    async def sweep(self) -> int:
        """Forget expired alerts."""
        removed = 0
        async with self._lock:
            now = self._clock()
            for key in list(self._recent):
                kept = [r for r in self._recent[key] if r.expires_at > now]
                removed += len(self._recent[key]) - len(kept)
                if kept:
                    self._recent[key] = kept
                else:
                    del self._recent[key]
        return removed
