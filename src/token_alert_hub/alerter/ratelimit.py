"""Per-rule cooldown and hourly quota tracking."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600.0


@dataclass(frozen=True)
class RateDecision:
    """Result of a rate limit check."""

    allowed: bool
    reason: Literal["cooldown", "hourly_cap"] | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = RateDecision(allowed=True)


@dataclass
class _RuleWindow:
    last_triggered_at: float | None = None
    triggers: deque[float] = field(default_factory=deque)


class RateLimiter:
    """Cooldown and sliding-window hourly cap per rule.

    ``try_acquire`` only inspects state; ``record`` registers a firing. The
    caller is expected to serialize acquire and record for the same rule so
    two concurrent events cannot both pass a check meant for one. Both
    methods are synchronous, which makes each of them atomic on the event
    loop.
    """

    def __init__(
        self,
        *,
        window_seconds: float = HOUR_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._rules: dict[str, _RuleWindow] = {}
        self._longest_cooldown = 0.0

    def _prune(self, state: _RuleWindow, now: float) -> None:
        cutoff = now - self.window_seconds
        while state.triggers and state.triggers[0] <= cutoff:
            state.triggers.popleft()

    def try_acquire(
        self,
        rule_id: str,
        cooldown_seconds: float,
        max_per_hour: int,
    ) -> RateDecision:
        """Check whether a rule may fire now.

        Args:
            rule_id: Rule to check.
            cooldown_seconds: Minimum seconds since the last firing.
            max_per_hour: Firings allowed in the trailing window.

        Returns:
            RateDecision; denied decisions carry the reason.
        """
        self._longest_cooldown = max(self._longest_cooldown, cooldown_seconds)
        state = self._rules.get(rule_id)
        if state is None:
            return ALLOWED

        now = self._clock()
        if (
            state.last_triggered_at is not None
            and now - state.last_triggered_at < cooldown_seconds
        ):
            return RateDecision(allowed=False, reason="cooldown")

        self._prune(state, now)
        if len(state.triggers) >= max_per_hour:
            return RateDecision(allowed=False, reason="hourly_cap")

        return ALLOWED

    def record(self, rule_id: str) -> None:
        """Register that a rule fired now."""
        now = self._clock()
        state = self._rules.setdefault(rule_id, _RuleWindow())
        self._prune(state, now)
        state.last_triggered_at = now
        state.triggers.append(now)

    def trigger_count(self, rule_id: str) -> int:
        """Firings of a rule inside the current window."""
        state = self._rules.get(rule_id)
        if state is None:
            return 0
        self._prune(state, self._clock())
        return len(state.triggers)

    def forget(self, rule_id: str) -> None:
        """Drop all state for a rule (e.g. after deletion)."""
        self._rules.pop(rule_id, None)

    def sweep(self) -> int:
        """Drop expired timestamps and idle rules. Returns rules removed.

        A rule is idle once its window is empty and no cooldown seen so far
        could still be running.
        """
        now = self._clock()
        retain = max(self.window_seconds, self._longest_cooldown)
        idle = []
        for rule_id, state in self._rules.items():
            self._prune(state, now)
            if state.triggers:
                continue
            if state.last_triggered_at is None or now - state.last_triggered_at >= retain:
                idle.append(rule_id)
        for rule_id in idle:
            del self._rules[rule_id]
        if idle:
            logger.debug("Rate limiter dropped %d idle rules", len(idle))
        return len(idle)
