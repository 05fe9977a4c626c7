"""Exception hierarchy for the sentinel pipeline."""

from __future__ import annotations


class SentinelError(Exception):
    """Base exception for all sentinel errors."""


class ConfigError(SentinelError):
    """Configuration could not be loaded or failed validation."""


class StateError(SentinelError):
    """Persisted state is unreadable, corrupt, or locked by another instance."""


class FetchError(SentinelError):
    """The snapshot source was unreachable or returned something unusable."""


class LoginError(FetchError):
    """Onboarding to the tailnet failed (bad key, timeout, login required)."""


class DeliveryError(SentinelError):
    """A sink rejected or could not receive a notification."""


class DetectorError(SentinelError):
    """One detector failed on one comparison.

    These are collected rather than raised so the rest of the cycle proceeds.
    """

    def __init__(self, detector: str, message: str, subject: str = "") -> None:
        super().__init__(message)
        self.detector = detector
        self.subject = subject

    def __str__(self) -> str:
        where = f"{self.detector}[{self.subject}]" if self.subject else self.detector
        return f"{where}: {self.args[0]}"
