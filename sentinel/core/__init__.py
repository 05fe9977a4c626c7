"""Core module: config, types, errors, logging, backoff."""

from sentinel.core.backoff import Backoff
from sentinel.core.config import Settings, load_settings, validate_settings
from sentinel.core.exceptions import (
    ConfigError,
    DeliveryError,
    DetectorError,
    FetchError,
    LoginError,
    SentinelError,
    StateError,
)
from sentinel.core.logging import setup_logging
from sentinel.core.types import (
    DeliveryResult,
    DeliveryStatus,
    Event,
    EventType,
    IdempotencyRecord,
    PeerRecord,
    PolicyDecision,
    SelfRecord,
    Severity,
    Snapshot,
    Verdict,
    utc_now,
)

__all__ = [
    "Backoff",
    "ConfigError",
    "DeliveryError",
    "DeliveryResult",
    "DeliveryStatus",
    "DetectorError",
    "Event",
    "EventType",
    "FetchError",
    "IdempotencyRecord",
    "LoginError",
    "PeerRecord",
    "PolicyDecision",
    "SelfRecord",
    "SentinelError",
    "Settings",
    "Severity",
    "Snapshot",
    "StateError",
    "Verdict",
    "load_settings",
    "setup_logging",
    "utc_now",
    "validate_settings",
]
