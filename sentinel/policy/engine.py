"""Policy engine: suppression, trailing debounce, rate limiting and batching."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from sentinel.core.config import PolicyConfig
from sentinel.core.types import Event, EventType, PolicyDecision, Verdict, utc_now
from sentinel.policy.rate_limiter import SlidingWindowLimiter

logger = structlog.get_logger(__name__)


@dataclass
class _Pending:
    event: Event
    first_seen: datetime
    last_seen: datetime
    occurrences: int = 1


class PolicyEngine:
    """Turns the raw event stream into policy decisions.

    Stages run per event in this order:

    1. Suppression: an emit for the same dedup key within
       ``suppression_window`` makes a repeat ``suppressed``.
    2. Debounce: events are held per coalesce key until
       ``debounce_window`` passes with no new occurrence; only the last
       occurrence survives.  Held events report ``debounced`` and are
       released at the start of a later ``apply()``.
    3. Rate limiting: at most ``rate_limit_per_min`` emits in any rolling
       minute (plus optional per-type limits); the excess is dropped as
       ``rate_limited``.
    4. Batching: emits are numbered into batches of ``batch_size`` in
       emission order.  Batches never span two ``apply()`` calls.

    State lives in-process and belongs to the poll loop's task.
    """

    def __init__(
        self,
        config: PolicyConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._clock = clock
        self._last_emit: dict[str, datetime] = {}
        self._pending: dict[str, _Pending] = {}
        self._limiter = SlidingWindowLimiter(config.rate_limit_per_min)
        self._type_limiters: dict[EventType, SlidingWindowLimiter] = {
            EventType(name): SlidingWindowLimiter(limit)
            for name, limit in config.rate_limit_per_type.items()
        }

    # ── Properties ───────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_release(self) -> datetime | None:
        """When the earliest held event becomes releasable, if any."""
        if not self._pending:
            return None
        window = self._config.debounce_window
        return min(p.last_seen for p in self._pending.values()) + window

    def snapshot(self, now: datetime | None = None) -> dict[str, object]:
        now = now or self._clock()
        return {
            "pending": len(self._pending),
            "suppression_entries": len(self._last_emit),
            "emitted_last_minute": self._limiter.in_window(now),
        }

    # ── Entry points ─────────────────────────────────────────────

    def apply(
        self,
        events: Iterable[Event],
        now: datetime | None = None,
        flush: bool = False,
    ) -> list[PolicyDecision]:
        """Run one cycle's events through every stage.

        With *flush*, everything still held after intake is released at the
        end of this call instead of waiting for the quiet period; single-shot
        runs use this so nothing is stranded when the process exits.
        """
        now = now or self._clock()
        self._prune_suppression(now)

        decisions: list[PolicyDecision] = []
        ready = self._release(now, force=False)

        for event in events:
            if self._is_suppressed(event, now):
                decisions.append(PolicyDecision(event=event, verdict=Verdict.SUPPRESSED))
                continue
            if self._config.debounce_window > timedelta(0):
                self._hold(event, now)
                decisions.append(PolicyDecision(event=event, verdict=Verdict.DEBOUNCED))
                continue
            ready.append(event)

        if flush:
            ready.extend(self._release(now, force=True))

        decisions.extend(self._admit(ready, now))
        self._log(decisions)
        return decisions

    # ── Stages ───────────────────────────────────────────────────

    def _prune_suppression(self, now: datetime) -> None:
        window = self._config.suppression_window
        if not self._last_emit:
            return
        cutoff = now - window
        for key in [k for k, t in self._last_emit.items() if t <= cutoff]:
            del self._last_emit[key]

    def _is_suppressed(self, event: Event, now: datetime) -> bool:
        window = self._config.suppression_window
        if window <= timedelta(0):
            return False
        last = self._last_emit.get(event.dedup_key)
        return last is not None and now - last < window

    def _hold(self, event: Event, now: datetime) -> None:
        entry = self._pending.get(event.coalesce_key)
        if entry is None:
            self._pending[event.coalesce_key] = _Pending(event, first_seen=now, last_seen=now)
            return
        entry.event = event
        entry.last_seen = now
        entry.occurrences += 1

    def _release(self, now: datetime, force: bool) -> list[Event]:
        window = self._config.debounce_window
        released: list[Event] = []
        for key, entry in list(self._pending.items()):
            if force or now - entry.last_seen >= window:
                del self._pending[key]
                if entry.occurrences > 1:
                    logger.debug(
                        "debounce_coalesced",
                        key=key,
                        occurrences=entry.occurrences,
                        final_type=str(entry.event.type),
                    )
                released.append(entry.event)
        return released

    def _admit(self, ready: list[Event], now: datetime) -> list[PolicyDecision]:
        decisions: list[PolicyDecision] = []
        emitted = 0
        batch_size = self._config.batch_size
        for event in ready:
            type_limiter = self._type_limiters.get(event.type)
            if (type_limiter is not None and not type_limiter.available(now)) or (
                not self._limiter.available(now)
            ):
                decisions.append(PolicyDecision(event=event, verdict=Verdict.RATE_LIMITED))
                continue
            self._limiter.record(now)
            if type_limiter is not None:
                type_limiter.record(now)
            if self._config.suppression_window > timedelta(0):
                self._last_emit[event.dedup_key] = now
            decisions.append(
                PolicyDecision(event=event, verdict=Verdict.EMIT, batch=emitted // batch_size)
            )
            emitted += 1
        return decisions

    @staticmethod
    def _log(decisions: list[PolicyDecision]) -> None:
        if not decisions:
            return
        counts: dict[str, int] = {}
        for d in decisions:
            counts[d.verdict.value] = counts.get(d.verdict.value, 0) + 1
        logger.info("policy_applied", **counts)


def group_batches(decisions: Iterable[PolicyDecision]) -> list[list[PolicyDecision]]:
    """Emit decisions grouped by batch number, preserving order."""
    batches: dict[int, list[PolicyDecision]] = {}
    for decision in decisions:
        if decision.verdict != Verdict.EMIT or decision.batch is None:
            continue
        batches.setdefault(decision.batch, []).append(decision)
    return [batches[i] for i in sorted(batches)]
