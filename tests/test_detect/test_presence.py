"""Tests for sentinel/detect/presence.py."""

from __future__ import annotations

from datetime import UTC, datetime

from sentinel.core.types import EventType, PeerRecord, Severity, Snapshot
from sentinel.detect.presence import PresenceDetector

T0 = datetime(2026, 1, 1, tzinfo=UTC)
T1 = datetime(2026, 1, 1, 0, 0, 10, tzinfo=UTC)


def _peer(pid: str, **kw: object) -> PeerRecord:
    return PeerRecord(id=pid, name=f"host-{pid}", online=True, **kw)  # type: ignore[arg-type]


def _snap(*peers: PeerRecord, at: datetime = T0) -> Snapshot:
    return Snapshot(tailnet="example.ts.net", captured_at=at, peers=peers)


class TestPresence:
    def test_no_change(self) -> None:
        snap = _snap(_peer("a"), _peer("b"))
        result = PresenceDetector().detect(snap, snap)
        assert result.events == []
        assert result.errors == []

    def test_removal_before_addition(self) -> None:
        prev = _snap(_peer("a"), _peer("b"))
        curr = _snap(_peer("a"), _peer("c"), at=T1)
        events = PresenceDetector().detect(prev, curr).events
        assert [(e.type, e.subject) for e in events] == [
            (EventType.PEER_REMOVED, "b"),
            (EventType.PEER_ADDED, "c"),
        ]
        assert events[0].severity == Severity.WARN
        assert events[1].severity == Severity.INFO

    def test_sorted_by_id_within_kind(self) -> None:
        prev = _snap()
        curr = _snap(_peer("z"), _peer("m"), _peer("a"))
        events = PresenceDetector().detect(prev, curr).events
        assert [e.subject for e in events] == ["a", "m", "z"]

    def test_payload_and_time(self) -> None:
        prev = _snap()
        curr = _snap(_peer("a", addresses=("100.64.0.2", "fd7a::2")), at=T1)
        (event,) = PresenceDetector().detect(prev, curr).events
        assert event.occurred_at == T1
        assert event.payload == {
            "peer_id": "a",
            "name": "host-a",
            "addresses": "100.64.0.2,fd7a::2",
            "online": "true",
        }

    def test_rerun_yields_same_keys(self) -> None:
        prev = _snap(_peer("a"))
        curr = _snap(_peer("b"))
        first = PresenceDetector().detect(prev, curr).events
        second = PresenceDetector().detect(prev, curr).events
        assert [e.dedup_key for e in first] == [e.dedup_key for e in second]

    def test_removed_again_later_gets_new_key(self) -> None:
        det = PresenceDetector()
        gone = _snap(_peer("a"))
        first = det.detect(_snap(_peer("a"), _peer("b")).model_copy(update={"generation": 1}), gone)
        again = det.detect(_snap(_peer("a"), _peer("b")).model_copy(update={"generation": 3}), gone)
        assert first.events[0].type == EventType.PEER_REMOVED
        assert first.events[0].dedup_key != again.events[0].dedup_key
