"""Self-node runtime changes: client version, home relay, addresses, connectivity."""

from __future__ import annotations

from sentinel.core.types import SELF_SUBJECT, Event, EventType, Severity, Snapshot
from sentinel.detect.base import DetectionResult, Detector, transition_identity

_FIELDS: tuple[tuple[str, EventType, Severity], ...] = (
    ("version", EventType.RUNTIME_VERSION_CHANGED, Severity.INFO),
    ("relay", EventType.RUNTIME_RELAY_CHANGED, Severity.WARN),
    ("addresses", EventType.RUNTIME_ADDRESSES_CHANGED, Severity.INFO),
    ("online", EventType.RUNTIME_ONLINE_CHANGED, Severity.CRITICAL),
)


def _render(value: object) -> str:
    if isinstance(value, tuple):
        return ",".join(value)
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


class RuntimeDetector(Detector):
    name = "runtime"

    def detect(self, prev: Snapshot, curr: Snapshot) -> DetectionResult:
        result = DetectionResult()
        self._each(
            _FIELDS,
            lambda row: row[0],
            lambda row: self._compare(prev, curr, *row),
            result,
        )
        return result

    @staticmethod
    def _compare(
        prev: Snapshot,
        curr: Snapshot,
        attr: str,
        event_type: EventType,
        severity: Severity,
    ) -> list[Event]:
        old = _render(getattr(prev.self_node, attr))
        new = _render(getattr(curr.self_node, attr))
        if old == new:
            return []
        if attr == "online" and curr.self_node.online:
            severity = Severity.INFO
        return [
            Event.create(
                event_type,
                SELF_SUBJECT,
                severity=severity,
                occurred_at=curr.captured_at,
                identity=transition_identity(prev, previous=old, current=new),
                payload={
                    "field": attr,
                    "previous": old,
                    "current": new,
                    "hostname": curr.self_node.name,
                },
            )
        ]
