"""Tests for per-rule rate limiting."""

import pytest

from token_alert_hub.alerter.ratelimit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(window_seconds=3600, clock=clock)


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_unknown_rule_allowed(self, limiter: RateLimiter) -> None:
        assert limiter.try_acquire("r", 60, 5)

    def test_cooldown(self, limiter: RateLimiter, clock: FakeClock) -> None:
        limiter.record("r")
        clock.value = 59
        decision = limiter.try_acquire("r", 60, 5)
        assert not decision
        assert decision.reason == "cooldown"

        clock.value = 60
        assert limiter.try_acquire("r", 60, 5)

    def test_hourly_cap_is_sliding(self, limiter: RateLimiter, clock: FakeClock) -> None:
        for t in (0, 100, 200):
            clock.value = t
            limiter.record("r")

        clock.value = 300
        decision = limiter.try_acquire("r", 0, 3)
        assert decision.reason == "hourly_cap"

        # The first firing leaves the window after one hour
        clock.value = 3601
        assert limiter.try_acquire("r", 0, 3)
        assert limiter.trigger_count("r") == 2

    def test_rules_are_independent(self, limiter: RateLimiter) -> None:
        limiter.record("a")
        assert not limiter.try_acquire("a", 60, 5)
        assert limiter.try_acquire("b", 60, 5)

    def test_forget(self, limiter: RateLimiter) -> None:
        limiter.record("r")
        limiter.forget("r")
        assert limiter.trigger_count("r") == 0
        assert limiter.try_acquire("r", 60, 1)

    def test_sweep_keeps_running_cooldowns(self, limiter: RateLimiter, clock: FakeClock) -> None:
        limiter.try_acquire("r", 7200, 5)
        limiter.record("r")

        clock.value = 3700
        assert limiter.sweep() == 0

        clock.value = 7300
        assert limiter.sweep() == 1
        assert limiter.trigger_count("r") == 0
