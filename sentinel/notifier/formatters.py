"""Pure functions that render events for each sink kind."""

from __future__ import annotations

from typing import Any

from sentinel.core.types import Event, Severity

# Discord embed colours keyed by severity.
_DISCORD_COLORS: dict[Severity, int] = {
    Severity.INFO: 0x2ECC71,      # green
    Severity.WARN: 0xF39C12,      # orange
    Severity.CRITICAL: 0xE74C3C,  # red
}

# Discord caps embeds at 25 fields.
_DISCORD_MAX_FIELDS = 25


def to_envelope(event: Event) -> dict[str, Any]:
    """The generic JSON body every webhook sink receives."""
    return {
        "type": event.type.value,
        "severity": event.severity.label,
        "subject": event.subject,
        "occurred_at": event.occurred_at.isoformat(),
        "payload": dict(event.payload),
    }


def title(event: Event) -> str:
    name = event.payload.get("name") or event.subject
    return f"{event.type.value} {name}"


def format_line(event: Event) -> str:
    """Single-line rendering for stdout."""
    fields = " ".join(f"{k}={v}" for k, v in sorted(event.payload.items()))
    line = (
        f"{event.occurred_at.isoformat()} [{event.severity.label.upper()}] "
        f"{event.type.value} subject={event.subject}"
    )
    return f"{line} {fields}" if fields else line


def to_discord_payload(event: Event) -> dict[str, Any]:
    """Colour-coded embed carrying the envelope's fields."""
    embed_fields = [
        {"name": k, "value": v or "-", "inline": True}
        for k, v in sorted(event.payload.items())
    ][:_DISCORD_MAX_FIELDS]
    embed: dict[str, Any] = {
        "title": f"[{event.severity.label.upper()}] {title(event)}",
        "color": _DISCORD_COLORS.get(event.severity, 0x95A5A6),
        "timestamp": event.occurred_at.isoformat(),
        "footer": {"text": f"subject {event.subject}"},
    }
    if embed_fields:
        embed["fields"] = embed_fields
    return {"embeds": [embed]}
