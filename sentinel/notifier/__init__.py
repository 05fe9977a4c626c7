"""Notification routing, deduplication and sink delivery."""

from sentinel.notifier.channels import (
    DebugChannel,
    DiscordChannel,
    NotificationChannel,
    StdoutChannel,
    WebhookChannel,
)
from sentinel.notifier.dispatcher import Notifier, route_matches
from sentinel.notifier.factory import build_channel, create_notifier
from sentinel.notifier.formatters import format_line, to_discord_payload, to_envelope
from sentinel.notifier.ledger import IdempotencyLedger

__all__ = [
    "DebugChannel",
    "DiscordChannel",
    "IdempotencyLedger",
    "NotificationChannel",
    "Notifier",
    "StdoutChannel",
    "WebhookChannel",
    "build_channel",
    "create_notifier",
    "format_line",
    "route_matches",
    "to_discord_payload",
    "to_envelope",
]
