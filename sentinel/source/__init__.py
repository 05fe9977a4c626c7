"""Snapshot sources: where netmaps come from."""

from sentinel.source.base import LoginMode, SnapshotSource
from sentinel.source.tailscale import TailscaleSource, parse_status

__all__ = ["LoginMode", "SnapshotSource", "TailscaleSource", "parse_status"]
