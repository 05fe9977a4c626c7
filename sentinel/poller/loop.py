"""Poll loop: fetch, detect, apply policy, notify, commit, sleep."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from sentinel.core.backoff import Backoff
from sentinel.core.config import Settings
from sentinel.core.exceptions import DetectorError, FetchError
from sentinel.core.types import (
    DeliveryResult,
    DeliveryStatus,
    Event,
    PolicyDecision,
    Snapshot,
    Verdict,
    utc_now,
)
from sentinel.detect.pipeline import DetectorPipeline
from sentinel.notifier.dispatcher import Notifier
from sentinel.policy.engine import PolicyEngine, group_batches
from sentinel.source.base import LoginMode, SnapshotSource
from sentinel.state.store import StateStore

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_MIN_WAIT_SECS = 0.05


@dataclass
class CycleResult:
    """Everything one cycle produced."""

    generation: int
    baseline: bool = False
    dry_run: bool = False
    events: list[Event] = field(default_factory=list)
    decisions: list[PolicyDecision] = field(default_factory=list)
    deliveries: list[DeliveryResult] = field(default_factory=list)
    detector_errors: list[DetectorError] = field(default_factory=list)

    @property
    def emitted(self) -> int:
        return sum(1 for d in self.decisions if d.verdict == Verdict.EMIT)

    @property
    def failed_deliveries(self) -> int:
        return sum(1 for r in self.deliveries if r.status == DeliveryStatus.FAILED)


class Poller:
    """Drives one sequential pipeline.

    Cycles never overlap.  A fetch failure leaves stored state untouched and
    is retried with jittered exponential backoff; the new snapshot is
    committed only after detection, policy and delivery have run against the
    previous one.  Task cancellation interrupts any sleep or fetch and
    propagates as ``asyncio.CancelledError`` without committing.
    """

    def __init__(
        self,
        source: SnapshotSource,
        store: StateStore,
        pipeline: DetectorPipeline,
        policy: PolicyEngine,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._pipeline = pipeline
        self._policy = policy
        self._notifier = notifier
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._backoff = Backoff(
            minimum=settings.poll_backoff_min,
            maximum=settings.poll_backoff_max,
            jitter=settings.poll_jitter,
            rng=rng,
        )
        self._snapshot: Snapshot | None = None
        self._loaded = False
        self._connected = False
        self._cycles = 0

    # ── Properties ───────────────────────────────────────────────

    @property
    def snapshot(self) -> Snapshot | None:
        """The last successfully committed snapshot."""
        return self._snapshot

    @property
    def cycles(self) -> int:
        return self._cycles

    # ── State ────────────────────────────────────────────────────

    def load_state(self) -> None:
        """Read persisted state once.  StateError propagates (fatal at startup)."""
        if self._loaded:
            return
        snapshot, ledger = self._store.load()
        self._snapshot = snapshot
        self._notifier.ledger = ledger
        self._loaded = True

    async def fetch(self) -> Snapshot:
        """Connect if needed and pull a snapshot; every failure is a FetchError."""
        tsnet = self._settings.tsnet
        try:
            if not self._connected:
                await self._source.connect(LoginMode.parse(tsnet.login_mode), tsnet.login_timeout)
                self._connected = True
            return await self._source.snapshot()
        except FetchError:
            self._connected = False
            raise

    # ── Cycle ────────────────────────────────────────────────────

    async def run_once(self, dry_run: bool = False, flush: bool = False) -> CycleResult:
        """Run a single fetch → detect → policy → notify → commit cycle.

        Args:
            dry_run: Skip sink delivery; state is still committed.
            flush: Release debounced events at the end of this cycle.

        Raises:
            FetchError: The snapshot could not be fetched; nothing committed.
            StateError: Persisted state could not be read or written.
        """
        self.load_state()
        fetched = await self.fetch()

        prev = self._snapshot
        curr = fetched.model_copy(
            update={"generation": prev.generation + 1 if prev is not None else 1}
        )
        now = self._clock()
        comparable = curr.comparable_to(prev)
        if prev is not None and not comparable:
            logger.warning("tailnet_changed", previous=prev.tailnet, current=curr.tailnet)

        result = CycleResult(generation=curr.generation, dry_run=dry_run)
        if comparable or self._settings.policy.notify_on_first_cycle:
            base = prev if comparable and prev is not None else Snapshot(
                tailnet=curr.tailnet, generation=0, self_node=curr.self_node
            )
            detection = self._pipeline.run(base, curr)
            result.events = detection.events
            result.detector_errors = detection.errors
        else:
            result.baseline = True
            logger.info(
                "baseline_recorded",
                generation=curr.generation,
                tailnet=curr.tailnet,
                peers=len(curr.peers),
            )

        result.decisions = self._policy.apply(result.events, now, flush=flush)

        if dry_run:
            emitted = sum(1 for d in result.decisions if d.emitted)
            if emitted:
                logger.info("dry_run_skip_notify", emitted=emitted)
        else:
            for batch in group_batches(result.decisions):
                result.deliveries.extend(await self._notifier.deliver(batch))

        self._store.commit(curr, self._notifier.ledger)
        self._snapshot = curr
        self._cycles += 1

        logger.info(
            "cycle_completed",
            generation=curr.generation,
            peers=len(curr.peers),
            online=curr.online_count,
            events=len(result.events),
            emitted=result.emitted,
            delivered=sum(1 for r in result.deliveries if r.status == DeliveryStatus.DELIVERED),
            failed=result.failed_deliveries,
            detector_errors=len(result.detector_errors),
            dry_run=dry_run,
            policy=self._policy.snapshot(now),
        )
        return result

    # ── Loop ─────────────────────────────────────────────────────

    async def run(self, continuous: bool = True, dry_run: bool = False) -> None:
        """Loop until cancelled, or until one successful cycle if not *continuous*.

        A single-cycle run flushes debounced events instead of holding them.

        Cycle errors are logged and backed off, never raised; only a
        StateError while loading persisted state at startup escapes.
        """
        self.load_state()
        failures = 0
        while True:
            try:
                await self.run_once(dry_run=dry_run, flush=not continuous)
            except FetchError as exc:
                failures += 1
                await self._backoff_after_failure(failures, str(exc))
                continue
            except Exception as exc:
                failures += 1
                logger.exception("cycle_error", failures=failures)
                await self._backoff_after_failure(failures, repr(exc))
                continue

            failures = 0
            if not continuous:
                return
            await self._wait_next()

    async def _backoff_after_failure(self, failures: int, error: str) -> None:
        delay = self._backoff.delay(failures - 1)
        logger.warning(
            "cycle_failed",
            error=error,
            failures=failures,
            retry_in=round(delay, 3),
        )
        await self._sleep(delay)

    def _next_delay(self) -> float:
        delay = self._settings.poll_interval.total_seconds() + self._backoff.jitter_secs()
        release_at = self._policy.next_release()
        if release_at is not None:
            until_release = (release_at - self._clock()).total_seconds()
            delay = min(delay, max(until_release, _MIN_WAIT_SECS))
        return delay

    async def _wait_next(self) -> None:
        delay = self._next_delay()
        realtime = self._settings.source.mode.strip().lower() in ("", "realtime")
        if realtime and self._source.supports_push:
            try:
                changed = await self._source.wait_for_change(delay)
            except FetchError as exc:
                logger.debug("watch_failed", error=str(exc))
                await self._sleep(delay)
                return
            if changed:
                logger.debug("netmap_changed")
            return
        await self._sleep(delay)
