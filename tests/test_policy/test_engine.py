"""Tests for sentinel/policy/engine.py: suppression, debounce, rate limit, batching."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sentinel.core.config import PolicyConfig
from sentinel.core.types import Event, EventType, Verdict
from sentinel.policy.engine import PolicyEngine, group_batches

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _cfg(**overrides: object) -> PolicyConfig:
    defaults: dict[str, object] = {
        "debounce_window": timedelta(0),
        "suppression_window": timedelta(0),
        "rate_limit_per_min": 0,
        "batch_size": 20,
    }
    defaults.update(overrides)
    return PolicyConfig(**defaults)  # type: ignore[arg-type]


def _ev(event_type: EventType = EventType.PEER_ADDED, subject: str = "n1", mark: str = "") -> Event:
    identity = {"mark": mark} if mark else None
    return Event.create(event_type, subject, occurred_at=T0, identity=identity)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _verdicts(decisions: list) -> list[Verdict]:  # type: ignore[type-arg]
    return [d.verdict for d in decisions]


# ── Pass-through ────────────────────────────────────────────────


class TestPassThrough:
    def test_all_emit_in_order(self) -> None:
        engine = PolicyEngine(_cfg())
        events = [_ev(subject=s) for s in ("a", "b", "c")]
        decisions = engine.apply(events, now=T0)
        assert _verdicts(decisions) == [Verdict.EMIT] * 3
        assert [d.event.subject for d in decisions] == ["a", "b", "c"]

    def test_empty_cycle(self) -> None:
        assert PolicyEngine(_cfg()).apply([], now=T0) == []


# ── Suppression ─────────────────────────────────────────────────


class TestSuppression:
    def test_repeat_within_window_suppressed(self) -> None:
        engine = PolicyEngine(_cfg(suppression_window=timedelta(minutes=5)))
        assert _verdicts(engine.apply([_ev()], now=T0)) == [Verdict.EMIT]
        assert _verdicts(engine.apply([_ev()], now=_at(60))) == [Verdict.SUPPRESSED]

    def test_repeat_after_window_emits(self) -> None:
        engine = PolicyEngine(_cfg(suppression_window=timedelta(minutes=5)))
        engine.apply([_ev()], now=T0)
        assert _verdicts(engine.apply([_ev()], now=_at(300))) == [Verdict.EMIT]

    def test_different_identity_not_suppressed(self) -> None:
        engine = PolicyEngine(_cfg(suppression_window=timedelta(minutes=5)))
        engine.apply([_ev(mark="a")], now=T0)
        assert _verdicts(engine.apply([_ev(mark="b")], now=_at(1))) == [Verdict.EMIT]

    def test_suppressed_event_does_not_extend_window(self) -> None:
        engine = PolicyEngine(_cfg(suppression_window=timedelta(seconds=10)))
        engine.apply([_ev()], now=T0)
        engine.apply([_ev()], now=_at(9))
        assert _verdicts(engine.apply([_ev()], now=_at(10))) == [Verdict.EMIT]


# ── Debounce ────────────────────────────────────────────────────


class TestDebounce:
    def test_held_then_released_after_quiet_period(self) -> None:
        engine = PolicyEngine(_cfg(debounce_window=timedelta(seconds=3)))
        assert _verdicts(engine.apply([_ev()], now=T0)) == [Verdict.DEBOUNCED]
        assert engine.pending_count == 1
        assert engine.apply([], now=_at(2)) == []
        released = engine.apply([], now=_at(3))
        assert _verdicts(released) == [Verdict.EMIT]
        assert engine.pending_count == 0

    def test_flapping_collapses_to_last_state(self) -> None:
        engine = PolicyEngine(_cfg(debounce_window=timedelta(seconds=3)))
        engine.apply([_ev(EventType.PEER_OFFLINE, mark="1")], now=T0)
        engine.apply([_ev(EventType.PEER_ONLINE, mark="1")], now=_at(1))
        engine.apply([_ev(EventType.PEER_OFFLINE, mark="2")], now=_at(2))
        assert engine.apply([], now=_at(4)) == []
        (decision,) = engine.apply([], now=_at(5))
        assert decision.verdict == Verdict.EMIT
        assert decision.event.type == EventType.PEER_OFFLINE
        assert decision.event.payload == {}

    def test_distinct_subjects_held_separately(self) -> None:
        engine = PolicyEngine(_cfg(debounce_window=timedelta(seconds=3)))
        engine.apply([_ev(subject="a"), _ev(subject="b")], now=T0)
        assert engine.pending_count == 2
        released = engine.apply([], now=_at(3))
        assert [d.event.subject for d in released] == ["a", "b"]

    def test_next_release(self) -> None:
        engine = PolicyEngine(_cfg(debounce_window=timedelta(seconds=3)))
        assert engine.next_release() is None
        engine.apply([_ev(subject="a")], now=T0)
        engine.apply([_ev(subject="b")], now=_at(1))
        assert engine.next_release() == _at(3)

    def test_flush_releases_everything(self) -> None:
        engine = PolicyEngine(_cfg(debounce_window=timedelta(seconds=3)))
        decisions = engine.apply([_ev(subject="a"), _ev(subject="b")], now=T0, flush=True)
        assert _verdicts(decisions) == [
            Verdict.DEBOUNCED,
            Verdict.DEBOUNCED,
            Verdict.EMIT,
            Verdict.EMIT,
        ]
        assert engine.pending_count == 0


# ── Rate limiting ───────────────────────────────────────────────


class TestRateLimit:
    def test_excess_dropped(self) -> None:
        engine = PolicyEngine(_cfg(rate_limit_per_min=2))
        decisions = engine.apply([_ev(subject=s) for s in "abcd"], now=T0)
        assert _verdicts(decisions) == [
            Verdict.EMIT,
            Verdict.EMIT,
            Verdict.RATE_LIMITED,
            Verdict.RATE_LIMITED,
        ]

    def test_rolling_window_across_cycles(self) -> None:
        engine = PolicyEngine(_cfg(rate_limit_per_min=2))
        engine.apply([_ev(subject="a")], now=T0)
        engine.apply([_ev(subject="b")], now=_at(30))
        assert _verdicts(engine.apply([_ev(subject="c")], now=_at(59))) == [Verdict.RATE_LIMITED]
        assert _verdicts(engine.apply([_ev(subject="d")], now=_at(60))) == [Verdict.EMIT]

    def test_rate_limited_event_can_emit_later(self) -> None:
        engine = PolicyEngine(_cfg(rate_limit_per_min=1, suppression_window=timedelta(hours=1)))
        engine.apply([_ev(subject="a")], now=T0)
        assert _verdicts(engine.apply([_ev(subject="b")], now=_at(1))) == [Verdict.RATE_LIMITED]
        assert _verdicts(engine.apply([_ev(subject="b")], now=_at(61))) == [Verdict.EMIT]

    def test_per_type_limit(self) -> None:
        engine = PolicyEngine(
            _cfg(rate_limit_per_min=0, rate_limit_per_type={"peer_added": 1})
        )
        decisions = engine.apply(
            [
                _ev(EventType.PEER_ADDED, "a"),
                _ev(EventType.PEER_ADDED, "b"),
                _ev(EventType.PEER_REMOVED, "c"),
            ],
            now=T0,
        )
        assert _verdicts(decisions) == [Verdict.EMIT, Verdict.RATE_LIMITED, Verdict.EMIT]


# ── Batching ────────────────────────────────────────────────────


class TestBatching:
    def test_batch_numbers(self) -> None:
        engine = PolicyEngine(_cfg(batch_size=2))
        decisions = engine.apply([_ev(subject=s) for s in "abcde"], now=T0)
        assert [d.batch for d in decisions] == [0, 0, 1, 1, 2]

    def test_group_batches_skips_non_emits(self) -> None:
        engine = PolicyEngine(_cfg(batch_size=1, rate_limit_per_min=2))
        decisions = engine.apply([_ev(subject=s) for s in "abc"], now=T0)
        batches = group_batches(decisions)
        assert [[d.event.subject for d in b] for b in batches] == [["a"], ["b"]]

    def test_batches_restart_each_cycle(self) -> None:
        engine = PolicyEngine(_cfg(batch_size=2))
        engine.apply([_ev(subject="a")], now=T0)
        (decision,) = engine.apply([_ev(subject="b")], now=_at(1))
        assert decision.batch == 0


class TestClock:
    def test_injected_clock_used_when_now_omitted(self) -> None:
        times = iter([T0, _at(3)])
        engine = PolicyEngine(_cfg(debounce_window=timedelta(seconds=3)), clock=lambda: next(times))
        engine.apply([_ev()])
        assert _verdicts(engine.apply([])) == [Verdict.EMIT]


class TestSnapshot:
    def test_counters(self) -> None:
        engine = PolicyEngine(
            _cfg(
                debounce_window=timedelta(seconds=3),
                suppression_window=timedelta(minutes=1),
                rate_limit_per_min=10,
            )
        )
        engine.apply([_ev(subject="a")], now=T0)
        engine.apply([_ev(subject="b")], now=_at(3))
        assert engine.snapshot(_at(3)) == {
            "pending": 1,
            "suppression_entries": 1,
            "emitted_last_minute": 1,
        }
