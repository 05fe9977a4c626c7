"""Tests for sentinel/policy/rate_limiter.py."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sentinel.policy.rate_limiter import SlidingWindowLimiter

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class TestSlidingWindow:
    def test_allows_up_to_limit(self) -> None:
        lim = SlidingWindowLimiter(3)
        assert [lim.try_acquire(T0) for _ in range(4)] == [True, True, True, False]

    def test_rolling_not_fixed_bucket(self) -> None:
        lim = SlidingWindowLimiter(2)
        assert lim.try_acquire(T0)
        assert lim.try_acquire(T0 + timedelta(seconds=30))
        # First slot frees at T0+60; second still holds until T0+90.
        assert not lim.try_acquire(T0 + timedelta(seconds=59))
        assert lim.try_acquire(T0 + timedelta(seconds=60))
        assert not lim.try_acquire(T0 + timedelta(seconds=61))

    def test_zero_disables(self) -> None:
        lim = SlidingWindowLimiter(0)
        assert all(lim.try_acquire(T0) for _ in range(1000))
        assert lim.in_window(T0) == 0

    def test_in_window(self) -> None:
        lim = SlidingWindowLimiter(10)
        for i in range(5):
            lim.record(T0 + timedelta(seconds=i * 20))
        assert lim.in_window(T0 + timedelta(seconds=80)) == 3

    def test_custom_window(self) -> None:
        lim = SlidingWindowLimiter(1, window=timedelta(seconds=5))
        assert lim.try_acquire(T0)
        assert lim.try_acquire(T0 + timedelta(seconds=5))
