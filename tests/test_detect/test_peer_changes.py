"""Tests for sentinel/detect/peers.py."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sentinel.core.types import EventType, PeerRecord, Severity, Snapshot
from sentinel.detect.peers import PeerChangesDetector

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _peer(pid: str = "n1", **kw: object) -> PeerRecord:
    defaults: dict[str, object] = {"name": "alpha", "online": True, "last_seen": T0}
    defaults.update(kw)
    return PeerRecord(id=pid, **defaults)  # type: ignore[arg-type]


def _snap(*peers: PeerRecord) -> Snapshot:
    return Snapshot(tailnet="t", captured_at=T0, peers=peers)


class TestOnlineOffline:
    def test_offline(self) -> None:
        result = PeerChangesDetector().detect(_snap(_peer()), _snap(_peer(online=False)))
        (event,) = result.events
        assert event.type == EventType.PEER_OFFLINE
        assert event.severity == Severity.WARN
        assert event.payload["online"] == "false"

    def test_online(self) -> None:
        result = PeerChangesDetector().detect(_snap(_peer(online=False)), _snap(_peer()))
        (event,) = result.events
        assert event.type == EventType.PEER_ONLINE
        assert event.severity == Severity.INFO

    def test_repeat_transition_gets_new_key(self) -> None:
        det = PeerChangesDetector()
        first = det.detect(_snap(_peer()), _snap(_peer(online=False))).events[0]
        later = T0 + timedelta(days=1)
        second = det.detect(
            _snap(_peer(last_seen=later)), _snap(_peer(online=False, last_seen=later))
        ).events[0]
        assert first.dedup_key != second.dedup_key

    def test_same_transition_same_key(self) -> None:
        det = PeerChangesDetector()
        a = det.detect(_snap(_peer()), _snap(_peer(online=False))).events[0]
        b = det.detect(_snap(_peer()), _snap(_peer(online=False))).events[0]
        assert a.dedup_key == b.dedup_key


class TestAttributes:
    def test_address_change(self) -> None:
        prev = _snap(_peer(addresses=("100.64.0.1",)))
        curr = _snap(_peer(addresses=("100.64.0.9",)))
        (event,) = PeerChangesDetector().detect(prev, curr).events
        assert event.type == EventType.PEER_ADDRESSES_CHANGED
        assert event.payload["previous"] == "100.64.0.1"
        assert event.payload["current"] == "100.64.0.9"

    def test_address_order_is_not_a_change(self) -> None:
        prev = _snap(_peer(addresses=("b", "a")))
        curr = _snap(_peer(addresses=("a", "b")))
        assert PeerChangesDetector().detect(prev, curr).events == []

    def test_tag_change(self) -> None:
        prev = _snap(_peer(tags=("tag:web",)))
        curr = _snap(_peer(tags=("tag:db", "tag:web")))
        (event,) = PeerChangesDetector().detect(prev, curr).events
        assert event.type == EventType.PEER_TAGS_CHANGED
        assert event.payload["current"] == "tag:db,tag:web"

    def test_multiple_changes_in_fixed_order(self) -> None:
        prev = _snap(_peer(addresses=("a",), tags=("tag:x",)))
        curr = _snap(_peer(online=False, addresses=("b",), tags=("tag:y",)))
        events = PeerChangesDetector().detect(prev, curr).events
        assert [e.type for e in events] == [
            EventType.PEER_OFFLINE,
            EventType.PEER_ADDRESSES_CHANGED,
            EventType.PEER_TAGS_CHANGED,
        ]

    def test_flip_back_and_forth_gets_new_key(self) -> None:
        det = PeerChangesDetector()
        old = _snap(_peer(addresses=("a",)))
        new = _snap(_peer(addresses=("b",)))
        first = det.detect(old.model_copy(update={"generation": 1}), new).events[0]
        again = det.detect(old.model_copy(update={"generation": 3}), new).events[0]
        assert first.dedup_key != again.dedup_key

    def test_added_or_removed_peers_ignored(self) -> None:
        prev = _snap(_peer("a"))
        curr = _snap(_peer("b", online=False))
        assert PeerChangesDetector().detect(prev, curr).events == []


class TestErrorIsolation:
    def test_one_bad_peer_does_not_stop_others(self) -> None:
        class Flaky(PeerChangesDetector):
            def _compare(self, old, new, prev, curr):  # type: ignore[no-untyped-def]
                if new.id == "bad":
                    raise RuntimeError("boom")
                return super()._compare(old, new, prev, curr)

        prev = _snap(_peer("bad"), _peer("good"))
        curr = _snap(_peer("bad", online=False), _peer("good", online=False))
        result = Flaky().detect(prev, curr)
        assert [e.subject for e in result.events] == ["good"]
        (err,) = result.errors
        assert err.detector == "peer_changes"
        assert err.subject == "bad"
        assert str(err) == "peer_changes[bad]: boom"
