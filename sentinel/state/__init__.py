"""Persisted snapshot and idempotency ledger."""

from sentinel.state.store import STATE_VERSION, StateStore

__all__ = ["STATE_VERSION", "StateStore"]
