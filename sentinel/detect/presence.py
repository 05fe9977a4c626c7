"""Peer added / removed detection."""

from __future__ import annotations

from sentinel.core.types import Event, EventType, PeerRecord, Severity, Snapshot
from sentinel.detect.base import DetectionResult, Detector, transition_identity


def _payload(peer: PeerRecord) -> dict[str, str]:
    return {
        "peer_id": peer.id,
        "name": peer.name,
        "addresses": ",".join(peer.addresses),
        "online": str(peer.online).lower(),
    }


class PresenceDetector(Detector):
    """Set difference on peer ID.

    Removals are reported before additions, each in peer-ID order, so the
    output order is fully determined by the two snapshots.
    """

    name = "presence"

    def detect(self, prev: Snapshot, curr: Snapshot) -> DetectionResult:
        result = DetectionResult()
        before = prev.peer_map()
        after = curr.peer_map()

        removed = [before[pid] for pid in sorted(before.keys() - after.keys())]
        added = [after[pid] for pid in sorted(after.keys() - before.keys())]

        self._each(
            removed,
            lambda p: p.id,
            lambda p: [self._event(EventType.PEER_REMOVED, p, prev, curr, Severity.WARN)],
            result,
        )
        self._each(
            added,
            lambda p: p.id,
            lambda p: [self._event(EventType.PEER_ADDED, p, prev, curr, Severity.INFO)],
            result,
        )
        return result

    @staticmethod
    def _event(
        event_type: EventType,
        peer: PeerRecord,
        prev: Snapshot,
        curr: Snapshot,
        severity: Severity,
    ) -> Event:
        return Event.create(
            event_type,
            peer.id,
            severity=severity,
            occurred_at=curr.captured_at,
            identity=transition_identity(prev),
            payload=_payload(peer),
        )
