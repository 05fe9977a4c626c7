"""Notification sinks: stdout, generic webhook, Discord and debug delivery."""

from __future__ import annotations

import abc
import asyncio
import sys
from typing import Any, TextIO

import aiohttp
import structlog

from sentinel.core.exceptions import DeliveryError
from sentinel.core.types import Event
from sentinel.notifier.formatters import format_line, to_discord_payload, to_envelope

logger = structlog.get_logger(__name__)


class NotificationChannel(abc.ABC):
    """Base class for sink delivery.

    ``send`` raises :class:`DeliveryError` when the sink did not accept the
    event; the notifier owns retries.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @property
    def kind(self) -> str:
        return type(self).__name__.removesuffix("Channel").lower()

    @abc.abstractmethod
    async def send(self, event: Event) -> None:
        """Deliver one event."""

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class StdoutChannel(NotificationChannel):
    """Writes one formatted line per event."""

    def __init__(self, name: str, stream: TextIO | None = None) -> None:
        super().__init__(name)
        self._stream = stream

    async def send(self, event: Event) -> None:
        stream = self._stream or sys.stdout
        try:
            stream.write(format_line(event) + "\n")
            stream.flush()
        except (OSError, ValueError) as exc:
            raise DeliveryError(f"stdout write failed: {exc}") from exc


class DebugChannel(NotificationChannel):
    """Accepts everything, delivers nothing."""

    async def send(self, event: Event) -> None:
        logger.debug(
            "debug_sink_event",
            sink=self.name,
            type=event.type.value,
            subject=event.subject,
            dedup_key=event.dedup_key,
        )


class WebhookChannel(NotificationChannel):
    """POSTs the generic JSON envelope to a URL."""

    def __init__(self, name: str, url: str, timeout_secs: float = 10.0) -> None:
        super().__init__(name)
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_secs)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _payload(self, event: Event) -> dict[str, Any]:
        return to_envelope(event)

    async def send(self, event: Event) -> None:
        if not self._url:
            raise DeliveryError(f"{self.kind} sink {self.name!r} has no url")
        try:
            session = self._get_session()
            async with session.post(self._url, json=self._payload(event)) as resp:
                if 200 <= resp.status < 300:
                    return
                body = await resp.text()
                raise DeliveryError(
                    f"{self.kind} sink {self.name!r} returned {resp.status}: {body[:200]}"
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(
                f"{self.kind} sink {self.name!r} request failed: {exc!r}"
            ) from exc

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class DiscordChannel(WebhookChannel):
    """Delivers via a Discord webhook with colour-coded embeds."""

    def _payload(self, event: Event) -> dict[str, Any]:
        return to_discord_payload(event)
