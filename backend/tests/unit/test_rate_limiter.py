"""
Unit Tests - Rate Limiter
Tests for the per caller, per provider sliding window.
"""
import pytest

from market_overview.data_providers.rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    RateWindow,
    DEFAULT_RATE_LIMITS,
)


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(
        configs={"yahoo": RateLimitConfig(max_requests=3, window_seconds=60)},
        clock=clock,
    )


class TestRateWindow:
    """Tests for the sliding window log."""

    def test_prune_drops_entries_at_window_edge(self):
        """Timestamps at exactly now - window are outside the window."""
        window = RateWindow("u", "yahoo", limit=2, window_seconds=60, timestamps=[100.0, 130.0])

        window.prune(160.0)

        assert window.timestamps == [130.0]

    def test_reset_time_is_oldest_plus_window(self):
        window = RateWindow("u", "yahoo", limit=2, window_seconds=60, timestamps=[100.0, 130.0])

        assert window.reset_time(150.0) == 160.0


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_default_limits(self):
        """Defaults match the provider quotas."""
        assert DEFAULT_RATE_LIMITS["upstox"] == RateLimitConfig(2000, 1800)
        assert DEFAULT_RATE_LIMITS["yahoo"] == RateLimitConfig(100, 60)
        assert DEFAULT_RATE_LIMITS["general"] == RateLimitConfig(1000, 900)

    def test_budget_enforced_within_window(self, limiter):
        """No more than max_requests in the window."""
        for _ in range(3):
            assert limiter.acquire("user-1", "yahoo") is True

        assert limiter.can_proceed("user-1", "yahoo") is False
        assert limiter.acquire("user-1", "yahoo") is False
        assert limiter.remaining("user-1", "yahoo") == 0

    def test_budget_frees_up_after_window(self, limiter, clock):
        """Old requests slide out of the window."""
        limiter.record("user-1", "yahoo")
        clock.advance(30)
        limiter.record("user-1", "yahoo")
        limiter.record("user-1", "yahoo")
        assert limiter.can_proceed("user-1", "yahoo") is False

        clock.advance(30)
        assert limiter.can_proceed("user-1", "yahoo") is True
        assert limiter.remaining("user-1", "yahoo") == 1

    def test_reset_time(self, limiter, clock):
        """reset_time is the oldest timestamp plus the window."""
        start = clock()
        limiter.record("user-1", "yahoo")
        clock.advance(10)
        limiter.record("user-1", "yahoo")

        assert limiter.reset_time("user-1", "yahoo") == start + 60

    def test_reset_time_is_now_when_idle(self, limiter, clock):
        assert limiter.reset_time("user-1", "yahoo") == clock()

    def test_callers_are_independent(self, limiter):
        """One caller's usage does not consume another's budget."""
        for _ in range(3):
            limiter.record("user-1", "yahoo")

        assert limiter.can_proceed("user-1", "yahoo") is False
        assert limiter.can_proceed("user-2", "yahoo") is True

    def test_providers_are_independent(self, limiter):
        for _ in range(3):
            limiter.record("user-1", "yahoo")

        assert limiter.can_proceed("user-1", "upstox") is True

    def test_unknown_provider_uses_general_limits(self, limiter):
        status = limiter.get_status("user-1", "nse")

        assert status["limit"] == 1000
        assert status["window_seconds"] == 900

    def test_can_proceed_does_not_record(self, limiter):
        """Checks never consume budget."""
        for _ in range(10):
            limiter.can_proceed("user-1", "yahoo")

        assert limiter.remaining("user-1", "yahoo") == 3

    def test_get_status(self, limiter, clock):
        limiter.record("user-1", "yahoo")

        status = limiter.get_status("user-1", "yahoo")

        assert status == {
            "can_proceed": True,
            "remaining": 2,
            "reset_time": clock() + 60,
            "window_seconds": 60,
            "limit": 3,
        }

    def test_cleanup_removes_idle_windows(self, limiter, clock):
        """Windows with nothing left inside them are reclaimed."""
        limiter.record("user-1", "yahoo")
        limiter.record("user-2", "yahoo")
        clock.advance(45)
        limiter.record("user-2", "yahoo")
        clock.advance(20)

        assert limiter.cleanup() == 1
        stats = limiter.get_stats()
        assert stats["total_keys"] == 1
        assert stats["active_callers"] == 1

    def test_configure_updates_existing_windows(self, limiter):
        for _ in range(3):
            limiter.record("user-1", "yahoo")

        limiter.configure("yahoo", RateLimitConfig(max_requests=5, window_seconds=60))

        assert limiter.remaining("user-1", "yahoo") == 2

    def test_stats_include_configs(self, limiter):
        stats = limiter.get_stats()

        assert stats["configs"]["yahoo"] == {"max_requests": 3, "window_seconds": 60}
        assert "general" in stats["configs"]

    def test_reset_single_caller(self, limiter):
        limiter.record("user-1", "yahoo")
        limiter.record("user-2", "yahoo")

        limiter.reset("user-1")

        assert limiter.get_stats()["total_keys"] == 1
