"""Online/offline transitions and attribute changes for peers present in both snapshots."""

from __future__ import annotations

from sentinel.core.types import Event, EventType, PeerRecord, Severity, Snapshot
from sentinel.detect.base import DetectionResult, Detector, transition_identity


def _iso(peer: PeerRecord) -> str:
    return peer.last_seen.isoformat() if peer.last_seen else ""


class PeerChangesDetector(Detector):
    name = "peer_changes"

    def detect(self, prev: Snapshot, curr: Snapshot) -> DetectionResult:
        result = DetectionResult()
        before = prev.peer_map()
        pairs = [(before[p.id], p) for p in curr.peers if p.id in before]
        self._each(
            pairs,
            lambda pair: pair[1].id,
            lambda pair: self._compare(pair[0], pair[1], prev, curr),
            result,
        )
        return result

    def _compare(
        self, old: PeerRecord, new: PeerRecord, prev: Snapshot, curr: Snapshot
    ) -> list[Event]:
        events: list[Event] = []
        base = {"peer_id": new.id, "name": new.name}

        if old.online != new.online:
            if new.online:
                # last_seen from when it went away pins this particular return.
                event_type, severity, marker = EventType.PEER_ONLINE, Severity.INFO, _iso(old)
            else:
                event_type, severity, marker = EventType.PEER_OFFLINE, Severity.WARN, _iso(new)
            events.append(
                Event.create(
                    event_type,
                    new.id,
                    severity=severity,
                    occurred_at=curr.captured_at,
                    identity=transition_identity(prev, last_seen=marker),
                    payload={
                        **base,
                        "online": str(new.online).lower(),
                        "last_seen": _iso(new),
                    },
                )
            )

        if old.addresses != new.addresses:
            events.append(
                Event.create(
                    EventType.PEER_ADDRESSES_CHANGED,
                    new.id,
                    occurred_at=curr.captured_at,
                    identity=transition_identity(prev, addresses=",".join(new.addresses)),
                    payload={
                        **base,
                        "previous": ",".join(old.addresses),
                        "current": ",".join(new.addresses),
                    },
                )
            )

        if old.tags != new.tags:
            events.append(
                Event.create(
                    EventType.PEER_TAGS_CHANGED,
                    new.id,
                    occurred_at=curr.captured_at,
                    identity=transition_identity(prev, tags=",".join(new.tags)),
                    payload={
                        **base,
                        "previous": ",".join(old.tags),
                        "current": ",".join(new.tags),
                    },
                )
            )

        return events
