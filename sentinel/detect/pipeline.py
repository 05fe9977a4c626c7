"""Ordered detector registry built once from validated settings."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from sentinel.core.config import Settings
from sentinel.core.exceptions import ConfigError, DetectorError
from sentinel.core.types import Snapshot
from sentinel.detect.base import DetectionResult, Detector
from sentinel.detect.peers import PeerChangesDetector
from sentinel.detect.presence import PresenceDetector
from sentinel.detect.runtime import RuntimeDetector

logger = structlog.get_logger(__name__)

DETECTOR_FACTORIES: dict[str, Callable[[], Detector]] = {
    PresenceDetector.name: PresenceDetector,
    PeerChangesDetector.name: PeerChangesDetector,
    RuntimeDetector.name: RuntimeDetector,
}


@dataclass(frozen=True)
class DetectorEntry:
    name: str
    detector: Detector
    enabled: bool


class DetectorPipeline:
    """Runs detectors in a fixed order and concatenates their events.

    The order of ``entries`` is the order of events handed to the policy
    engine, which in turn fixes batch ordering downstream.
    """

    def __init__(self, entries: list[DetectorEntry]) -> None:
        self._entries = list(entries)

    @classmethod
    def from_settings(cls, settings: Settings) -> DetectorPipeline:
        entries: list[DetectorEntry] = []
        for name in settings.detector_order:
            factory = DETECTOR_FACTORIES.get(name)
            if factory is None:
                raise ConfigError(f"detector_order references unsupported detector {name!r}")
            toggle = settings.detectors.get(name)
            entries.append(
                DetectorEntry(
                    name=name,
                    detector=factory(),
                    enabled=toggle.enabled if toggle is not None else False,
                )
            )
        return cls(entries)

    @property
    def entries(self) -> list[DetectorEntry]:
        return list(self._entries)

    @property
    def enabled_names(self) -> list[str]:
        return [e.name for e in self._entries if e.enabled]

    def run(self, prev: Snapshot, curr: Snapshot) -> DetectionResult:
        """Compare *prev* to *curr* with every enabled detector, in order."""
        combined = DetectionResult()
        for entry in self._entries:
            if not entry.enabled:
                continue
            try:
                result = entry.detector.detect(prev, curr)
            except Exception as exc:
                result = DetectionResult(
                    errors=[DetectorError(entry.name, str(exc) or type(exc).__name__)]
                )
            for err in result.errors:
                logger.warning(
                    "detector_error",
                    detector=err.detector,
                    subject=err.subject,
                    error=str(err.args[0]),
                )
            if result.events:
                logger.debug("detector_events", detector=entry.name, count=len(result.events))
            combined.extend(result)
        return combined
