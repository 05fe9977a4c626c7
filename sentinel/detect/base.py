"""Detector contract: compare two snapshots, produce events."""

from __future__ import annotations

import abc
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from sentinel.core.exceptions import DetectorError
from sentinel.core.types import Event, Snapshot

T = TypeVar("T")


@dataclass
class DetectionResult:
    """Events from one detector run plus any per-subject failures."""

    events: list[Event] = field(default_factory=list)
    errors: list[DetectorError] = field(default_factory=list)

    def extend(self, other: DetectionResult) -> None:
        self.events.extend(other.events)
        self.errors.extend(other.errors)


class Detector(abc.ABC):
    """Base class for snapshot comparators.

    Subclasses implement ``detect()``.  Use ``_each()`` to walk subjects so a
    failure on one peer is recorded and the rest are still compared.
    """

    name: str = ""

    @abc.abstractmethod
    def detect(self, prev: Snapshot, curr: Snapshot) -> DetectionResult:
        """Return the events describing how *curr* differs from *prev*."""

    def _each(
        self,
        items: Iterable[T],
        subject: Callable[[T], str],
        compare: Callable[[T], list[Event]],
        result: DetectionResult,
    ) -> None:
        for item in items:
            try:
                result.events.extend(compare(item))
            except Exception as exc:
                result.errors.append(
                    DetectorError(self.name, str(exc) or type(exc).__name__, subject(item))
                )


def transition_identity(prev: Snapshot, **fields: str) -> dict[str, str]:
    """Identity for a change observed against the committed snapshot *prev*.

    Re-detecting the same diff (say after a crash before commit) diffs against
    the same generation and keeps the key. The same change happening again
    later is seen against a newer generation and gets a fresh one.
    """
    return {**fields, "since": str(prev.generation)}
