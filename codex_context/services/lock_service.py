"""File based mutual exclusion for indexing operations."""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from ..models import LockRecord
from ..text import Messages

IS_WINDOWS = sys.platform == "win32"
if IS_WINDOWS:
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

LOCK_STALE_MINUTES = 30.0
WRITE_GRACE_SECONDS = 5.0
_KEY_RE = re.compile(r"[^a-zA-Z0-9\-_]")


@dataclass(frozen=True, slots=True)
class LockResult:
    acquired: bool
    message: str


class LockHeldError(RuntimeError):
    """Raised by :meth:`LockManager.hold` when another process owns the lock."""


def sanitize_key(operation: str) -> str:
    return _KEY_RE.sub("_", operation)


class LockManager:
    """Exclusive lock files created with ``O_CREAT | O_EXCL`` under ``{data_dir}/locks``.

    Taking over a stale or corrupt lock happens while holding an OS level lock on
    a sibling ``.guard`` file, so only one caller at a time can judge and replace
    a given lock file.
    """

    def __init__(self, data_dir: Path, stale_after_minutes: float = LOCK_STALE_MINUTES) -> None:
        self.lock_dir = Path(data_dir) / "locks"
        self.stale_after_minutes = stale_after_minutes

    def lock_path(self, operation: str) -> Path:
        return self.lock_dir / f"{sanitize_key(operation)}.lock"

    def acquire(self, operation: str) -> LockResult:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(operation)
        if self._create(path, operation):
            logger.debug("Acquired lock %s", path.name)
            return LockResult(True, Messages.INFO_LOCK_ACQUIRED)
        with _guarded(path.with_suffix(".guard")):
            record = self._read(path)
            age = _age_minutes(record) if record is not None else None
            if record is not None and age is not None and age < self.stale_after_minutes:
                return LockResult(False, Messages.ERROR_LOCK_HELD.format(minutes=int(age)))
            if record is None and _being_written(path):
                return LockResult(False, Messages.ERROR_LOCK_HELD.format(minutes=0))
            if path.exists():
                logger.warning("Removing %s lock %s", "stale" if record else "corrupt", path.name)
                path.unlink(missing_ok=True)
            if self._create(path, operation):
                logger.debug("Acquired lock %s", path.name)
                return LockResult(True, Messages.INFO_LOCK_ACQUIRED)
        return LockResult(False, Messages.ERROR_LOCK_HELD.format(minutes=0))

    def release(self, operation: str) -> bool:
        path = self.lock_path(operation)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Released lock %s", path.name)
        return True

    def is_locked(self, operation: str) -> bool:
        record = self._read(self.lock_path(operation))
        if record is None:
            return False
        age = _age_minutes(record)
        return age is not None and age < self.stale_after_minutes

    def info(self, operation: str) -> dict[str, object] | None:
        record = self._read(self.lock_path(operation))
        if record is None:
            return None
        data: dict[str, object] = record.to_dict()
        data["age_minutes"] = _age_minutes(record)
        return data

    @contextmanager
    def hold(
        self, operation: str, *, wait: float = 0.0, poll: float = 0.05
    ) -> Iterator[LockResult]:
        """Hold *operation* for the body of the block, retrying for up to *wait* seconds."""
        deadline = time.monotonic() + wait
        result = self.acquire(operation)
        while not result.acquired and time.monotonic() < deadline:
            time.sleep(poll)
            result = self.acquire(operation)
        if not result.acquired:
            raise LockHeldError(result.message)
        try:
            yield result
        finally:
            self.release(operation)

    @staticmethod
    def _create(path: Path, operation: str) -> bool:
        record = LockRecord(
            operation=operation,
            pid=os.getpid(),
            start_time=datetime.now(timezone.utc).isoformat(),
        )
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(record.to_dict(), handle)
        return True

    @staticmethod
    def _read(path: Path) -> LockRecord | None:
        try:
            return LockRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.debug("Unreadable lock %s: %s", path, exc)
            return None


@contextmanager
def _guarded(path: Path) -> Iterator[None]:
    """Hold an exclusive OS lock on *path* for the body of the block."""
    with open(path, "a+") as handle:
        if IS_WINDOWS:
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            if IS_WINDOWS:
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _age_minutes(record: LockRecord) -> float | None:
    try:
        started = datetime.fromisoformat(record.start_time)
    except ValueError:
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - started).total_seconds() / 60.0


def _being_written(path: Path) -> bool:
    """Return True for a lock file that is too young to be judged corrupt."""
    try:
        modified = path.stat().st_mtime
    except FileNotFoundError:
        return False
    return datetime.now(timezone.utc).timestamp() - modified < WRITE_GRACE_SECONDS
