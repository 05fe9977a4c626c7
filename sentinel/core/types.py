"""Domain types for netmap snapshots, change events and policy decisions."""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

SELF_SUBJECT = "self"


def utc_now() -> datetime:
    """Default clock used by the policy engine, notifier and poller."""
    return datetime.now(tz=UTC)


# ── Snapshot ────────────────────────────────────────────────────


class PeerRecord(BaseModel):
    """One node as seen in the netmap."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    addresses: tuple[str, ...] = ()
    online: bool = False
    last_seen: datetime | None = None
    tags: tuple[str, ...] = ()

    @field_validator("addresses", "tags", mode="after")
    @classmethod
    def _sorted_unique(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(value)))


class SelfRecord(PeerRecord):
    """The observing node, plus runtime attributes peers don't carry."""

    version: str = ""
    relay: str = ""
    backend_state: str = ""


class Snapshot(BaseModel):
    """Immutable point-in-time view of tailnet membership."""

    model_config = ConfigDict(frozen=True)

    tailnet: str = ""
    generation: int = 0
    captured_at: datetime = Field(default_factory=utc_now)
    self_node: SelfRecord = Field(default_factory=lambda: SelfRecord(id=SELF_SUBJECT))
    peers: tuple[PeerRecord, ...] = ()

    @field_validator("peers", mode="after")
    @classmethod
    def _sorted_peers(cls, value: tuple[PeerRecord, ...]) -> tuple[PeerRecord, ...]:
        return tuple(sorted(value, key=lambda p: p.id))

    def peer_map(self) -> dict[str, PeerRecord]:
        return {p.id: p for p in self.peers}

    def comparable_to(self, other: Snapshot | None) -> bool:
        """Snapshots only diff against each other within one tailnet."""
        return other is not None and other.tailnet == self.tailnet

    @property
    def online_count(self) -> int:
        return sum(1 for p in self.peers if p.online)


# ── Events ──────────────────────────────────────────────────────


class EventType(StrEnum):
    """Every change a detector can report."""

    PEER_ADDED = "peer_added"
    PEER_REMOVED = "peer_removed"
    PEER_ONLINE = "peer_online"
    PEER_OFFLINE = "peer_offline"
    PEER_ADDRESSES_CHANGED = "peer_addresses_changed"
    PEER_TAGS_CHANGED = "peer_tags_changed"
    RUNTIME_VERSION_CHANGED = "runtime_version_changed"
    RUNTIME_RELAY_CHANGED = "runtime_relay_changed"
    RUNTIME_ADDRESSES_CHANGED = "runtime_addresses_changed"
    RUNTIME_ONLINE_CHANGED = "runtime_online_changed"
    TEST = "test"


def is_known_event_type(name: str) -> bool:
    return name in EventType._value2member_map_


# Opposite transitions share a family so the debounce stage can coalesce them.
_EVENT_FAMILY: dict[EventType, str] = {
    EventType.PEER_ADDED: "presence",
    EventType.PEER_REMOVED: "presence",
    EventType.PEER_ONLINE: "status",
    EventType.PEER_OFFLINE: "status",
    EventType.PEER_ADDRESSES_CHANGED: "addresses",
    EventType.PEER_TAGS_CHANGED: "tags",
    EventType.RUNTIME_VERSION_CHANGED: "runtime_version",
    EventType.RUNTIME_RELAY_CHANGED: "runtime_relay",
    EventType.RUNTIME_ADDRESSES_CHANGED: "runtime_addresses",
    EventType.RUNTIME_ONLINE_CHANGED: "runtime_online",
    EventType.TEST: "test",
}


class Severity(IntEnum):
    """Event severity: ordered so comparisons work naturally."""

    INFO = 0
    WARN = 1
    CRITICAL = 2

    @classmethod
    def parse(cls, value: Any) -> Severity:
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise ValueError(f"unknown severity {value!r}")

    @property
    def label(self) -> str:
        return self.name.lower()


def make_dedup_key(
    event_type: EventType, subject: str, identity: dict[str, str] | None = None
) -> str:
    """Stable key for one logical change.

    Built only from the event type, subject and identity fields, so
    re-detecting the same change always yields the same key.
    """
    canonical = json.dumps(
        {"type": str(event_type), "subject": subject, "identity": identity or {}},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


class Event(BaseModel):
    """A typed change produced by a detector."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    severity: Severity = Severity.INFO
    subject: str
    occurred_at: datetime = Field(default_factory=utc_now)
    dedup_key: str
    payload: dict[str, str] = Field(default_factory=dict)

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)

    @field_serializer("severity")
    def _dump_severity(self, value: Severity) -> str:
        return value.label

    @classmethod
    def create(
        cls,
        event_type: EventType,
        subject: str,
        *,
        severity: Severity = Severity.INFO,
        occurred_at: datetime | None = None,
        identity: dict[str, str] | None = None,
        payload: dict[str, str] | None = None,
    ) -> Event:
        return cls(
            type=event_type,
            severity=severity,
            subject=subject,
            occurred_at=occurred_at or utc_now(),
            dedup_key=make_dedup_key(event_type, subject, identity),
            payload=payload or {},
        )

    @property
    def coalesce_key(self) -> str:
        return f"{_EVENT_FAMILY.get(self.type, str(self.type))}:{self.subject}"


# ── Policy / delivery ───────────────────────────────────────────


class Verdict(StrEnum):
    EMIT = "emit"
    DEBOUNCED = "debounced"
    SUPPRESSED = "suppressed"
    RATE_LIMITED = "rate_limited"


class PolicyDecision(BaseModel):
    """An event with the policy engine's verdict attached."""

    model_config = ConfigDict(frozen=True)

    event: Event
    verdict: Verdict
    batch: int | None = None

    @property
    def emitted(self) -> bool:
        return self.verdict == Verdict.EMIT


class IdempotencyRecord(BaseModel):
    """Marks one successful delivery of an event identity to a sink."""

    model_config = ConfigDict(frozen=True)

    key: str
    first_sent_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class DeliveryStatus(StrEnum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class DeliveryResult(BaseModel):
    """Outcome of delivering one event to one sink."""

    dedup_key: str
    sink: str
    status: DeliveryStatus
    attempts: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status != DeliveryStatus.FAILED
