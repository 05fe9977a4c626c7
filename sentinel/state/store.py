"""Persisted state: last snapshot plus the idempotency ledger, in one JSON file."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import tempfile
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from sentinel.core.exceptions import StateError
from sentinel.core.types import IdempotencyRecord, Snapshot, utc_now
from sentinel.notifier.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)

STATE_VERSION = 1


class StateStore:
    """Atomic load/commit of ``{"version", "snapshot", "ledger"}``.

    A missing file is a first run, not an error.  Commits go to a temp file
    in the same directory and are ``os.replace``d into place, so a reader
    never sees a partial write.
    """

    def __init__(self, path: str | Path, ledger_ttl: timedelta) -> None:
        self._path = Path(path)
        self._ledger_ttl = ledger_ttl
        self._lock_fd: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._path.with_name(self._path.name + ".lock")

    # ── Load / commit ────────────────────────────────────────────

    def load(self) -> tuple[Snapshot | None, IdempotencyLedger]:
        """Read persisted state.

        Raises:
            StateError: The file exists but is unreadable or malformed.
        """
        if not self._path.exists():
            logger.info("state_missing", path=str(self._path))
            return None, IdempotencyLedger(self._ledger_ttl)

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateError(f"read state {self._path}: {exc}") from exc

        if not isinstance(raw, dict):
            raise StateError(f"state {self._path} is not a JSON object")
        version = raw.get("version")
        if version != STATE_VERSION:
            raise StateError(f"state {self._path} has unsupported version {version!r}")

        try:
            snapshot_raw = raw.get("snapshot")
            snapshot = (
                Snapshot.model_validate(snapshot_raw) if snapshot_raw is not None else None
            )
            records = [IdempotencyRecord.model_validate(r) for r in raw.get("ledger") or []]
        except (ValidationError, TypeError) as exc:
            raise StateError(f"state {self._path} is corrupt: {exc}") from exc

        ledger = IdempotencyLedger(self._ledger_ttl, records)
        pruned = ledger.prune(utc_now())
        logger.debug(
            "state_loaded",
            generation=snapshot.generation if snapshot else None,
            ledger=len(ledger),
            pruned=pruned,
        )
        return snapshot, ledger

    @staticmethod
    def encode(snapshot: Snapshot | None, ledger: IdempotencyLedger) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "snapshot": snapshot.model_dump(mode="json") if snapshot else None,
            "ledger": [r.model_dump(mode="json") for r in ledger.records()],
        }

    def commit(self, snapshot: Snapshot | None, ledger: IdempotencyLedger) -> None:
        """Atomically replace the stored snapshot and ledger.

        Raises:
            StateError: The write or rename failed; the previous state is intact.
        """
        data = self.encode(snapshot, ledger)
        dir_path = self._path.parent
        try:
            dir_path.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=dir_path, prefix=f".{self._path.name}.", suffix=".tmp")
        except OSError as exc:
            raise StateError(f"write state {self._path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise StateError(f"write state {self._path}: {exc}") from exc
        self._sync_dir(dir_path)

    @staticmethod
    def _sync_dir(dir_path: Path) -> None:
        try:
            dir_fd = os.open(dir_path, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    # ── Single-instance guard ────────────────────────────────────

    def acquire_lock(self) -> None:
        """Take an exclusive lock next to the state file.

        Raises:
            StateError: Another process holds the lock.
        """
        if self._lock_fd is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            raise StateError(
                f"state {self._path} is locked by another sentinel instance"
            ) from exc
        self._lock_fd = fd

    def release_lock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    @contextlib.contextmanager
    def lock(self) -> Iterator[StateStore]:
        self.acquire_lock()
        try:
            yield self
        finally:
            self.release_lock()
