"""Tests for sentinel/core/types.py: snapshot normalization, event identity."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from sentinel.core.types import (
    DeliveryResult,
    DeliveryStatus,
    Event,
    EventType,
    IdempotencyRecord,
    PeerRecord,
    SelfRecord,
    Severity,
    Snapshot,
    is_known_event_type,
    make_dedup_key,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class TestSnapshot:
    def test_peers_sorted_by_id(self) -> None:
        snap = Snapshot(peers=(PeerRecord(id="c"), PeerRecord(id="a"), PeerRecord(id="b")))
        assert [p.id for p in snap.peers] == ["a", "b", "c"]

    def test_addresses_and_tags_normalized(self) -> None:
        peer = PeerRecord(
            id="a", addresses=("100.64.0.2", "100.64.0.1", "100.64.0.2"), tags=("tag:b", "tag:a")
        )
        assert peer.addresses == ("100.64.0.1", "100.64.0.2")
        assert peer.tags == ("tag:a", "tag:b")

    def test_comparable_to(self) -> None:
        a = Snapshot(tailnet="example.ts.net")
        assert a.comparable_to(Snapshot(tailnet="example.ts.net"))
        assert not a.comparable_to(Snapshot(tailnet="other.ts.net"))
        assert not a.comparable_to(None)

    def test_online_count(self) -> None:
        snap = Snapshot(
            peers=(PeerRecord(id="a", online=True), PeerRecord(id="b"), PeerRecord(id="c", online=True))
        )
        assert snap.online_count == 2

    def test_json_roundtrip_is_equal(self) -> None:
        snap = Snapshot(
            tailnet="t",
            generation=3,
            captured_at=T0,
            self_node=SelfRecord(id="self-1", name="sentinel", version="1.70.0", online=True),
            peers=(PeerRecord(id="a", name="alpha", last_seen=T0),),
        )
        assert Snapshot.model_validate_json(snap.model_dump_json()) == snap


class TestSeverity:
    def test_ordering(self) -> None:
        assert Severity.INFO < Severity.WARN < Severity.CRITICAL

    @pytest.mark.parametrize("raw", ["warn", "WARN", " Warn "])
    def test_parse_label(self, raw: str) -> None:
        assert Severity.parse(raw) is Severity.WARN

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError):
            Severity.parse("fatal")

    def test_label(self) -> None:
        assert Severity.CRITICAL.label == "critical"


class TestEventIdentity:
    def test_dedup_key_stable(self) -> None:
        a = make_dedup_key(EventType.PEER_OFFLINE, "n1", {"last_seen": "x"})
        b = make_dedup_key(EventType.PEER_OFFLINE, "n1", {"last_seen": "x"})
        assert a == b
        assert len(a) == 32

    def test_dedup_key_ignores_identity_order(self) -> None:
        a = make_dedup_key(EventType.TEST, "s", {"a": "1", "b": "2"})
        b = make_dedup_key(EventType.TEST, "s", {"b": "2", "a": "1"})
        assert a == b

    def test_dedup_key_varies_with_inputs(self) -> None:
        base = make_dedup_key(EventType.PEER_ADDED, "n1")
        assert base != make_dedup_key(EventType.PEER_REMOVED, "n1")
        assert base != make_dedup_key(EventType.PEER_ADDED, "n2")
        assert base != make_dedup_key(EventType.PEER_ADDED, "n1", {"x": "y"})

    def test_create_ignores_payload_and_time_in_key(self) -> None:
        e1 = Event.create(EventType.PEER_ADDED, "n1", occurred_at=T0, payload={"name": "a"})
        e2 = Event.create(
            EventType.PEER_ADDED, "n1", occurred_at=T0 + timedelta(hours=1), payload={"name": "b"}
        )
        assert e1.dedup_key == e2.dedup_key

    def test_coalesce_key_shared_by_opposites(self) -> None:
        online = Event.create(EventType.PEER_ONLINE, "n1", identity={"last_seen": "a"})
        offline = Event.create(EventType.PEER_OFFLINE, "n1", identity={"last_seen": "b"})
        assert online.coalesce_key == offline.coalesce_key == "status:n1"
        assert online.dedup_key != offline.dedup_key

    def test_severity_serialized_as_label(self) -> None:
        event = Event.create(EventType.PEER_REMOVED, "n1", severity=Severity.WARN, occurred_at=T0)
        dumped = event.model_dump(mode="json")
        assert dumped["severity"] == "warn"
        assert Event.model_validate(dumped) == event

    def test_is_known_event_type(self) -> None:
        assert is_known_event_type("peer_added")
        assert not is_known_event_type("peer_exploded")


class TestDeliveryTypes:
    def test_record_expiry(self) -> None:
        rec = IdempotencyRecord(key="k|s", first_sent_at=T0, expires_at=T0 + timedelta(hours=1))
        assert not rec.expired(T0 + timedelta(minutes=59))
        assert rec.expired(T0 + timedelta(hours=1))

    def test_result_ok(self) -> None:
        assert DeliveryResult(dedup_key="k", sink="s", status=DeliveryStatus.DUPLICATE).ok
        assert not DeliveryResult(dedup_key="k", sink="s", status=DeliveryStatus.FAILED).ok
