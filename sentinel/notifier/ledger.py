"""Idempotency ledger: at most one delivery per (event identity, sink) per TTL."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from sentinel.core.types import IdempotencyRecord


class IdempotencyLedger:
    """Delivery records keyed by ``"<dedup_key>|<sink>"``.

    Expired records are dropped lazily whenever the ledger is consulted or
    written, so its size tracks event volume within one TTL.
    """

    def __init__(
        self, ttl: timedelta, records: Iterable[IdempotencyRecord] = ()
    ) -> None:
        self.ttl = ttl
        self._records: dict[str, IdempotencyRecord] = {r.key: r for r in records}

    @staticmethod
    def key(dedup_key: str, sink: str) -> str:
        return f"{dedup_key}|{sink}"

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def records(self) -> list[IdempotencyRecord]:
        return list(self._records.values())

    def prune(self, now: datetime) -> int:
        """Drop expired records. Returns how many were removed."""
        expired = [k for k, r in self._records.items() if r.expired(now)]
        for k in expired:
            del self._records[k]
        return len(expired)

    def seen(self, dedup_key: str, sink: str, now: datetime) -> bool:
        """True if a live record exists for this event on this sink."""
        self.prune(now)
        return self.key(dedup_key, sink) in self._records

    def record(self, dedup_key: str, sink: str, now: datetime) -> IdempotencyRecord:
        """Mark a successful delivery."""
        self.prune(now)
        key = self.key(dedup_key, sink)
        existing = self._records.get(key)
        if existing is not None:
            return existing
        rec = IdempotencyRecord(key=key, first_sent_at=now, expires_at=now + self.ttl)
        self._records[key] = rec
        return rec
