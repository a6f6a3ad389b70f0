"""Persistent registry of indexed codebases."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

from ..text import Messages
from ..utils import atomic_write_json, namespace_for_path
from .lock_service import LockHeldError, LockManager

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "indexed-codebases.json"
REGISTRY_LOCK_KEY = "registry"
REGISTRY_LOCK_WAIT_SECONDS = 10.0

T = TypeVar("T")


@dataclass(slots=True)
class IndexedCodebase:
    path: str
    namespace: str
    total_chunks: int = 0
    indexed_at: str = ""
    failed: bool = False
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "namespace": self.namespace,
            "totalChunks": self.total_chunks,
            "indexedAt": self.indexed_at,
            "failed": self.failed,
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "IndexedCodebase":
        return cls(
            path=str(raw["path"]),
            namespace=str(raw["namespace"]),
            total_chunks=int(raw.get("totalChunks") or 0),
            indexed_at=str(raw.get("indexedAt") or ""),
            failed=bool(raw.get("failed", False)),
            failure_reason=raw.get("failureReason") or None,
        )


def _normalize(path: Path | str) -> str:
    return str(Path(path).expanduser().resolve())


class CodebaseRegistry:
    """Explicitly loaded, explicitly saved map of codebase path to index record.

    Nothing is read from disk until :meth:`load` is called; mutating methods only
    touch memory, and :meth:`save` writes the whole document atomically.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._entries: dict[str, IndexedCodebase] = {}
        self.loaded = False

    def load(self) -> "CodebaseRegistry":
        self._entries = {}
        if self.path.exists():
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
                for raw in payload.get("codebases") or ():
                    entry = IndexedCodebase.from_dict(raw)
                    self._entries[entry.path] = entry
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.warning("Ignoring unreadable registry %s: %s", self.path, exc)
                self._entries = {}
        self.loaded = True
        return self

    def save(self) -> None:
        payload = {
            "codebases": [entry.to_dict() for _, entry in sorted(self._entries.items())]
        }
        atomic_write_json(self.path, payload)

    def register(self, path: Path | str, namespace: str, total_chunks: int) -> IndexedCodebase:
        entry = IndexedCodebase(
            path=_normalize(path),
            namespace=namespace,
            total_chunks=total_chunks,
            indexed_at=datetime.now(timezone.utc).isoformat(),
        )
        self._entries[entry.path] = entry
        return entry

    def register_failure(self, path: Path | str, reason: str) -> IndexedCodebase:
        key = _normalize(path)
        previous = self._entries.get(key)
        entry = IndexedCodebase(
            path=key,
            namespace=previous.namespace if previous else namespace_for_path(key),
            total_chunks=previous.total_chunks if previous else 0,
            indexed_at=previous.indexed_at if previous else "",
            failed=True,
            failure_reason=reason,
        )
        self._entries[key] = entry
        return entry

    def get(self, path: Path | str) -> IndexedCodebase | None:
        return self._entries.get(_normalize(path))

    def namespace_for(self, path: Path | str) -> str:
        entry = self.get(path)
        if entry is not None:
            return entry.namespace
        return namespace_for_path(path)

    def is_indexed(self, path: Path | str) -> bool:
        entry = self.get(path)
        return entry is not None and not entry.failed

    def indexed_codebases(self) -> list[IndexedCodebase]:
        return [entry for _, entry in sorted(self._entries.items())]

    def remove(self, path: Path | str) -> bool:
        return self._entries.pop(_normalize(path), None) is not None


def open_registry(data_dir: Path) -> CodebaseRegistry:
    return CodebaseRegistry(Path(data_dir) / REGISTRY_FILENAME).load()


def update_registry(
    registry: CodebaseRegistry,
    locks: LockManager,
    mutate: Callable[[CodebaseRegistry], T],
) -> T:
    """Reload *registry*, apply *mutate* and save it while holding the registry lock.

    The registry file is shared by every codebase, so concurrent index runs on
    different namespaces must never save an in-memory copy loaded earlier.
    """
    try:
        with locks.hold(REGISTRY_LOCK_KEY, wait=REGISTRY_LOCK_WAIT_SECONDS):
            registry.load()
            outcome = mutate(registry)
            registry.save()
    except LockHeldError as exc:
        raise LockHeldError(Messages.ERROR_REGISTRY_BUSY) from exc
    return outcome
