"""Convenience factory for wiring the notifier from settings."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

import structlog

from sentinel.core.backoff import Backoff
from sentinel.core.config import Settings, SinkConfig
from sentinel.core.exceptions import ConfigError
from sentinel.core.types import utc_now
from sentinel.notifier.channels import (
    DebugChannel,
    DiscordChannel,
    NotificationChannel,
    StdoutChannel,
    WebhookChannel,
)
from sentinel.notifier.dispatcher import Notifier, SleepFn
from sentinel.notifier.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)


def build_channel(sink: SinkConfig, timeout_secs: float = 10.0) -> NotificationChannel:
    kind = sink.type.strip().lower() or "stdout"
    if kind == "stdout":
        return StdoutChannel(sink.name)
    if kind == "debug":
        return DebugChannel(sink.name)
    if kind == "webhook":
        return WebhookChannel(sink.name, sink.url.strip(), timeout_secs=timeout_secs)
    if kind == "discord":
        return DiscordChannel(sink.name, sink.url.strip(), timeout_secs=timeout_secs)
    raise ConfigError(f"sink {sink.name!r} has unsupported type {sink.type!r}")


def create_notifier(
    settings: Settings,
    ledger: IdempotencyLedger | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: SleepFn = asyncio.sleep,
) -> Notifier:
    """Build channels, routes and the retry policy from *settings*.

    Webhook sinks whose URL expanded to nothing (an unset ``${VAR}``) are
    left out; routes naming them log ``sink_unknown`` at delivery time.
    """
    cfg = settings.notifier
    timeout = cfg.delivery_timeout.total_seconds()

    channels: list[NotificationChannel] = []
    for sink in cfg.sinks:
        kind = sink.type.strip().lower()
        if kind == "webhook" and not sink.url.strip():
            logger.warning("sink_disabled", sink=sink.name, reason="empty url")
            continue
        channels.append(build_channel(sink, timeout))

    backoff = Backoff(
        minimum=cfg.delivery_backoff_min,
        maximum=cfg.delivery_backoff_max,
        max_attempts=cfg.delivery_max_attempts,
    )
    if ledger is None:
        ledger = IdempotencyLedger(settings.idempotency_key_ttl)
    return Notifier(
        routes=cfg.routes,
        channels=channels,
        ledger=ledger,
        backoff=backoff,
        clock=clock,
        sleep=sleep,
    )
