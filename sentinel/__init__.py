"""Tailnet netmap diff and notification daemon."""

__version__ = "0.4.0"
BUILD_TIMESTAMP = "unknown"
COMMIT_HASH = "unknown"
