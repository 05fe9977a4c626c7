"""Cycle orchestration."""

from sentinel.poller.loop import CycleResult, Poller

__all__ = ["CycleResult", "Poller"]
