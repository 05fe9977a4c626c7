"""Exponential backoff with jitter, shared by the poll loop and sink delivery."""

from __future__ import annotations

import random
from datetime import timedelta


class Backoff:
    """Bounded exponential backoff.

    ``delay(attempt)`` doubles from *minimum* per attempt, caps at *maximum*,
    then adds uniform jitter in ``[0, jitter]``.  ``max_attempts`` of ``None``
    means unlimited (the poll loop); the delivery path sets a cap.
    """

    def __init__(
        self,
        minimum: timedelta,
        maximum: timedelta,
        jitter: timedelta = timedelta(0),
        max_attempts: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if maximum < minimum:
            maximum = minimum
        self.minimum = minimum
        self.maximum = maximum
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number *attempt* (0-based)."""
        base = self.minimum.total_seconds() * (2 ** min(max(attempt, 0), 32))
        capped = min(base, self.maximum.total_seconds())
        return capped + self.jitter_secs()

    def jitter_secs(self) -> float:
        span = self.jitter.total_seconds()
        if span <= 0:
            return 0.0
        return self._rng.uniform(0.0, span)

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts
