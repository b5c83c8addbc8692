"""Tests for the fixed-window publish rate limiter."""

from __future__ import annotations

from fakes import FakeClock

from fedwatch.federation.rate_limit import RateLimiter


class TestRateLimiter:
    def test_allows_up_to_limit(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_per_minute=3, clock=clock)
        assert [limiter.check() for _ in range(4)] == [True, True, True, False]
        assert limiter.rejected == 1
        assert limiter.remaining() == 0

    def test_window_rolls_over(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_per_minute=2, clock=clock)
        limiter.check()
        limiter.check()
        assert limiter.check() is False

        clock.advance(60.0)  # not yet stale: reset needs > 60s
        assert limiter.check() is False

        clock.advance(0.5)
        assert limiter.check() is True
        assert limiter.window.count == 1
        assert limiter.window.window_start == clock.now

    def test_rejections_do_not_consume_budget(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_per_minute=1, clock=clock)
        assert limiter.check() is True
        for _ in range(10):
            assert limiter.check() is False
        assert limiter.window.count == 1

    def test_window_is_a_copy(self) -> None:
        limiter = RateLimiter(max_per_minute=5, clock=FakeClock())
        snapshot = limiter.window
        snapshot.count = 99
        assert limiter.window.count == 0
