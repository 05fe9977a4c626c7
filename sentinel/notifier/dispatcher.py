"""Notifier: routes approved events to sinks with idempotency and retry."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

import structlog

from sentinel.core.backoff import Backoff
from sentinel.core.config import RouteConfig
from sentinel.core.exceptions import DeliveryError
from sentinel.core.types import (
    DeliveryResult,
    DeliveryStatus,
    Event,
    PolicyDecision,
    utc_now,
)
from sentinel.notifier.channels import NotificationChannel
from sentinel.notifier.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def route_matches(route: RouteConfig, event: Event) -> bool:
    types = {t.strip() for t in route.event_types}
    if "*" not in types and event.type.value not in types:
        return False
    return not route.severities or event.severity in route.severities


class Notifier:
    """Delivers policy-approved events.

    - Routing is default-deny: an event matching no route is logged and
      dropped.  Every matching route contributes its sinks, each sink once.
    - Before each sink dispatch the ledger is consulted; a live record makes
      the delivery a ``duplicate`` (success).  Records are only written after
      a successful send, so failures stay retryable.
    - Failed sends are retried with ``backoff`` up to its attempt cap.  One
      sink failing never affects another sink or another event.
    - Sinks run concurrently; events for one sink go out in batch order.
    """

    def __init__(
        self,
        routes: list[RouteConfig],
        channels: Iterable[NotificationChannel],
        ledger: IdempotencyLedger,
        backoff: Backoff,
        clock: Callable[[], datetime] = utc_now,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._routes = list(routes)
        self._channels: dict[str, NotificationChannel] = {c.name: c for c in channels}
        self._ledger = ledger
        self._backoff = backoff
        self._clock = clock
        self._sleep = sleep

    @property
    def ledger(self) -> IdempotencyLedger:
        return self._ledger

    @ledger.setter
    def ledger(self, ledger: IdempotencyLedger) -> None:
        self._ledger = ledger

    @property
    def channels(self) -> dict[str, NotificationChannel]:
        return dict(self._channels)

    def route(self, event: Event) -> list[str]:
        """Sink names for *event*, in route order, without repeats."""
        sinks: list[str] = []
        for route in self._routes:
            if not route_matches(route, event):
                continue
            for name in route.sinks:
                if name not in sinks:
                    sinks.append(name)
        return sinks

    async def deliver(self, batch: Iterable[PolicyDecision]) -> list[DeliveryResult]:
        """Route and deliver every ``emit`` decision in *batch*."""
        plan: dict[str, list[Event]] = {}
        for decision in batch:
            if not decision.emitted:
                continue
            event = decision.event
            sinks = self.route(event)
            if not sinks:
                logger.info(
                    "event_unrouted",
                    type=event.type.value,
                    subject=event.subject,
                    severity=event.severity.label,
                )
                continue
            for name in sinks:
                plan.setdefault(name, []).append(event)

        if not plan:
            return []

        per_sink = await asyncio.gather(
            *(self._deliver_to_sink(name, events) for name, events in plan.items())
        )
        return [result for results in per_sink for result in results]

    async def send_test(
        self, event: Event, sinks: Iterable[str] | None = None
    ) -> list[DeliveryResult]:
        """Push *event* straight to sinks, bypassing routes and the ledger."""
        names = list(sinks) if sinks is not None else list(self._channels)
        results = await asyncio.gather(
            *(self._send_with_retry(name, event) for name in names)
        )
        return list(results)

    async def close(self) -> None:
        for ch in self._channels.values():
            try:
                await ch.close()
            except Exception:
                logger.exception("channel_close_error", sink=ch.name)

    # ── Internal ────────────────────────────────────────────────

    async def _deliver_to_sink(
        self, name: str, events: list[Event]
    ) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        for event in events:
            if self._ledger.seen(event.dedup_key, name, self._clock()):
                logger.debug("delivery_duplicate", sink=name, dedup_key=event.dedup_key)
                results.append(
                    DeliveryResult(
                        dedup_key=event.dedup_key, sink=name, status=DeliveryStatus.DUPLICATE
                    )
                )
                continue
            result = await self._send_with_retry(name, event)
            if result.status == DeliveryStatus.DELIVERED:
                self._ledger.record(event.dedup_key, name, self._clock())
            results.append(result)
        return results

    async def _send_with_retry(self, name: str, event: Event) -> DeliveryResult:
        channel = self._channels.get(name)
        if channel is None:
            logger.warning("sink_unknown", sink=name, type=event.type.value)
            return DeliveryResult(
                dedup_key=event.dedup_key,
                sink=name,
                status=DeliveryStatus.FAILED,
                error="unknown sink",
            )

        attempts = 0
        last_error = ""
        while True:
            attempts += 1
            try:
                await channel.send(event)
            except DeliveryError as exc:
                last_error = str(exc)
            except Exception as exc:
                logger.exception("channel_send_error", sink=name)
                last_error = repr(exc)
            else:
                logger.info(
                    "event_delivered",
                    sink=name,
                    type=event.type.value,
                    subject=event.subject,
                    attempts=attempts,
                )
                return DeliveryResult(
                    dedup_key=event.dedup_key,
                    sink=name,
                    status=DeliveryStatus.DELIVERED,
                    attempts=attempts,
                )

            if self._backoff.exhausted(attempts):
                logger.error(
                    "delivery_failed",
                    sink=name,
                    type=event.type.value,
                    subject=event.subject,
                    attempts=attempts,
                    error=last_error,
                )
                return DeliveryResult(
                    dedup_key=event.dedup_key,
                    sink=name,
                    status=DeliveryStatus.FAILED,
                    attempts=attempts,
                    error=last_error,
                )

            delay = self._backoff.delay(attempts - 1)
            logger.warning(
                "delivery_retrying",
                sink=name,
                attempt=attempts,
                delay=round(delay, 3),
                error=last_error,
            )
            await self._sleep(delay)
