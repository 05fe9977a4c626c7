"""Tests for sentinel/detect/runtime.py."""

from __future__ import annotations

from datetime import UTC, datetime

from sentinel.core.types import SELF_SUBJECT, EventType, SelfRecord, Severity, Snapshot
from sentinel.detect.runtime import RuntimeDetector

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _snap(**kw: object) -> Snapshot:
    defaults: dict[str, object] = {
        "id": "self-1",
        "name": "sentinel",
        "version": "1.70.0",
        "relay": "fra",
        "addresses": ("100.64.0.1",),
        "online": True,
    }
    defaults.update(kw)
    return Snapshot(tailnet="t", captured_at=T0, self_node=SelfRecord(**defaults))  # type: ignore[arg-type]


class TestRuntime:
    def test_unchanged(self) -> None:
        assert RuntimeDetector().detect(_snap(), _snap()).events == []

    def test_version_change(self) -> None:
        (event,) = RuntimeDetector().detect(_snap(), _snap(version="1.72.1")).events
        assert event.type == EventType.RUNTIME_VERSION_CHANGED
        assert event.subject == SELF_SUBJECT
        assert event.severity == Severity.INFO
        assert event.payload == {
            "field": "version",
            "previous": "1.70.0",
            "current": "1.72.1",
            "hostname": "sentinel",
        }

    def test_relay_change_warns(self) -> None:
        (event,) = RuntimeDetector().detect(_snap(), _snap(relay="nyc")).events
        assert event.type == EventType.RUNTIME_RELAY_CHANGED
        assert event.severity == Severity.WARN

    def test_going_offline_is_critical(self) -> None:
        (event,) = RuntimeDetector().detect(_snap(), _snap(online=False)).events
        assert event.type == EventType.RUNTIME_ONLINE_CHANGED
        assert event.severity == Severity.CRITICAL
        assert event.payload["current"] == "false"

    def test_coming_back_is_info(self) -> None:
        (event,) = RuntimeDetector().detect(_snap(online=False), _snap()).events
        assert event.severity == Severity.INFO

    def test_field_order(self) -> None:
        events = RuntimeDetector().detect(
            _snap(), _snap(version="2", relay="nyc", addresses=("100.64.0.9",), online=False)
        ).events
        assert [e.type for e in events] == [
            EventType.RUNTIME_VERSION_CHANGED,
            EventType.RUNTIME_RELAY_CHANGED,
            EventType.RUNTIME_ADDRESSES_CHANGED,
            EventType.RUNTIME_ONLINE_CHANGED,
        ]

    def test_same_diff_same_key(self) -> None:
        det = RuntimeDetector()
        a = det.detect(_snap(), _snap(version="2")).events[0]
        b = det.detect(_snap(), _snap(version="2")).events[0]
        assert a.dedup_key == b.dedup_key

    def test_key_varies_with_previous_value(self) -> None:
        det = RuntimeDetector()
        a = det.detect(_snap(), _snap(version="2")).events[0]
        b = det.detect(_snap(version="0.9"), _snap(version="2")).events[0]
        c = det.detect(_snap(), _snap(version="3")).events[0]
        assert a.dedup_key != b.dedup_key
        assert a.dedup_key != c.dedup_key

    def test_going_offline_again_gets_new_key(self) -> None:
        det = RuntimeDetector()
        first = det.detect(_snap().model_copy(update={"generation": 3}), _snap(online=False))
        again = det.detect(_snap().model_copy(update={"generation": 7}), _snap(online=False))
        assert first.events[0].dedup_key != again.events[0].dedup_key
