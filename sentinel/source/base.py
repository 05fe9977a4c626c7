"""Abstract snapshot source: onboarding, snapshot fetch, change notification."""

from __future__ import annotations

import abc
from datetime import timedelta
from enum import StrEnum
from types import TracebackType

from sentinel.core.types import Snapshot


class LoginMode(StrEnum):
    AUTO = "auto"
    AUTH_KEY = "auth_key"
    INTERACTIVE = "interactive"

    @classmethod
    def parse(cls, value: str) -> LoginMode:
        text = (value or "").strip().lower()
        return cls(text) if text else cls.AUTO


class SnapshotSource(abc.ABC):
    """Supplies netmap snapshots.

    Every failure surfaces as :class:`FetchError` (or its subclass
    :class:`LoginError`) so the poll loop can treat them uniformly.
    """

    @abc.abstractmethod
    async def connect(self, mode: LoginMode, timeout: timedelta) -> None:
        """Bring the node onto the tailnet."""

    @abc.abstractmethod
    async def snapshot(self) -> Snapshot:
        """Return the current netmap (generation is stamped by the caller)."""

    async def wait_for_change(self, timeout: float) -> bool:
        """Block until the netmap may have changed or *timeout* elapses.

        Returns True if woken by a change.  Sources without push support just
        report a timeout; the caller sleeps instead.
        """
        return False

    @property
    def supports_push(self) -> bool:
        return False

    async def close(self) -> None:
        """Release resources."""

    async def __aenter__(self) -> SnapshotSource:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
