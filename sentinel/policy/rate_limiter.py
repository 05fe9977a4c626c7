"""Sliding-window rate limiter for emitted events."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta

WINDOW = timedelta(seconds=60)


class SlidingWindowLimiter:
    """At most ``limit`` acquisitions in any rolling ``window``.

    Keeps one timestamp per accepted event, so memory is bounded by
    ``limit``.  A limit of zero disables limiting.
    """

    def __init__(self, limit: int, window: timedelta = WINDOW) -> None:
        self.limit = limit
        self.window = window
        self._accepted: deque[datetime] = deque()

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._accepted and self._accepted[0] <= cutoff:
            self._accepted.popleft()

    def available(self, now: datetime) -> bool:
        if self.limit <= 0:
            return True
        self._prune(now)
        return len(self._accepted) < self.limit

    def record(self, now: datetime) -> None:
        if self.limit > 0:
            self._accepted.append(now)

    def try_acquire(self, now: datetime) -> bool:
        """Consume one slot if available. Returns True if successful."""
        if not self.available(now):
            return False
        self.record(now)
        return True

    def in_window(self, now: datetime) -> int:
        self._prune(now)
        return len(self._accepted)
