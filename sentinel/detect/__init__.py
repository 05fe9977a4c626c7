"""Detector pipeline: turns two netmap snapshots into typed events."""

from sentinel.detect.base import DetectionResult, Detector
from sentinel.detect.peers import PeerChangesDetector
from sentinel.detect.pipeline import DETECTOR_FACTORIES, DetectorEntry, DetectorPipeline
from sentinel.detect.presence import PresenceDetector
from sentinel.detect.runtime import RuntimeDetector

__all__ = [
    "DETECTOR_FACTORIES",
    "DetectionResult",
    "Detector",
    "DetectorEntry",
    "DetectorPipeline",
    "PeerChangesDetector",
    "PresenceDetector",
    "RuntimeDetector",
]
