"""Change detection and snapshot maintenance for incremental indexing."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from ..models import ChangeSet, Chunk, FileFingerprint, IndexSnapshot
from ..utils import atomic_write_json, content_hash, namespace_for_path

logger = logging.getLogger(__name__)

HASH_CHECK_HOURS = 24.0
RESOLVABLE_EXTENSIONS: tuple[str, ...] = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_modified(path: str, fingerprint: FileFingerprint, *, now: float, window: float) -> bool:
    try:
        stat = os.stat(path)
        if stat.st_mtime > fingerprint.last_modified:
            return True
        if stat.st_size != fingerprint.size:
            return True
        if now - fingerprint.last_modified < window:
            return content_hash(Path(path).read_bytes()) != fingerprint.content_hash
        return False
    except OSError as exc:
        logger.warning("Cannot check %s, treating it as modified: %s", path, exc)
        return True


def compute_change_set(
    current_paths: Iterable[str | os.PathLike[str]],
    snapshot: IndexSnapshot | None,
    *,
    hash_check_hours: float = HASH_CHECK_HOURS,
    now: float | None = None,
) -> ChangeSet:
    """Classify *current_paths* against *snapshot*.

    A file is modified when its mtime grew, its size changed, or (only while the
    stored fingerprint is younger than ``hash_check_hours``) its sha256 differs.
    Files that cannot be stat'ed or read count as modified. Unchanged files in the
    dependency neighbourhood of any new, modified or deleted file are reported in
    ``dependency_changes`` as well.
    """

    current = list(dict.fromkeys(str(path) for path in current_paths))
    changes = ChangeSet()
    if snapshot is None:
        changes.new_files = current
        return changes

    clock = time.time() if now is None else now
    window = hash_check_hours * 3600.0
    current_set = set(current)
    for path in current:
        fingerprint = snapshot.files.get(path)
        if fingerprint is None:
            changes.new_files.append(path)
        elif _is_modified(path, fingerprint, now=clock, window=window):
            changes.modified_files.append(path)
        else:
            changes.unchanged_files.append(path)
    changes.deleted_files = sorted(path for path in snapshot.files if path not in current_set)

    touched = [*changes.new_files, *changes.modified_files, *changes.deleted_files]
    affected: set[str] = set()
    for path in touched:
        fingerprint = snapshot.files.get(path)
        if fingerprint is not None:
            affected.update(fingerprint.dependents)
            affected.update(fingerprint.depends_on)
    for path in changes.new_files:
        # files whose stored imports now resolve to a newly added file
        for other, fingerprint in snapshot.files.items():
            if path in resolve_dependencies(other, fingerprint.imports, (path,)):
                affected.add(other)
    unchanged = set(changes.unchanged_files)
    changes.dependency_changes = sorted(affected & unchanged)
    return changes


def resolve_dependencies(
    path: str, imports: Iterable[str], known_paths: Iterable[str]
) -> list[str]:
    """Map relative module specifiers in *imports* to files in *known_paths*."""

    known = set(known_paths)
    base_dir = os.path.dirname(path)
    resolved: dict[str, None] = {}
    for module in imports:
        if not module.startswith(("./", "../")) and module not in (".", ".."):
            continue
        target = os.path.normpath(os.path.join(base_dir, module))
        stem, ext = os.path.splitext(target)
        candidates = [target]
        if ext in RESOLVABLE_EXTENSIONS:
            candidates.extend(stem + other for other in RESOLVABLE_EXTENSIONS)
        candidates.extend(target + other for other in RESOLVABLE_EXTENSIONS)
        candidates.extend(os.path.join(target, "index" + other) for other in RESOLVABLE_EXTENSIONS)
        for candidate in candidates:
            if candidate in known and candidate != path:
                resolved.setdefault(candidate, None)
                break
    return sorted(resolved)


def register_file(snapshot: IndexSnapshot, fingerprint: FileFingerprint) -> None:
    """Insert or replace *fingerprint*, keeping dependency edges symmetric."""

    path = fingerprint.path
    previous = snapshot.files.get(path)
    if previous is not None:
        for dependency in previous.depends_on:
            target = snapshot.files.get(dependency)
            if target is not None and path in target.dependents:
                target.dependents.remove(path)
    fingerprint.depends_on = sorted({dep for dep in fingerprint.depends_on if dep != path})
    for dependency in fingerprint.depends_on:
        target = snapshot.files.get(dependency)
        if target is not None and path not in target.dependents:
            target.dependents.append(path)
            target.dependents.sort()
    fingerprint.dependents = sorted(
        other
        for other, item in snapshot.files.items()
        if other != path and path in item.depends_on
    )
    snapshot.files[path] = fingerprint


def remove_file(snapshot: IndexSnapshot, path: str) -> FileFingerprint | None:
    """Drop *path* and every cross reference to it."""

    fingerprint = snapshot.files.pop(path, None)
    if fingerprint is None:
        return None
    for dependency in fingerprint.depends_on:
        target = snapshot.files.get(dependency)
        if target is not None and path in target.dependents:
            target.dependents.remove(path)
    for dependent in fingerprint.dependents:
        target = snapshot.files.get(dependent)
        if target is not None and path in target.depends_on:
            target.depends_on.remove(path)
    return fingerprint


def prune_edges(snapshot: IndexSnapshot) -> None:
    """Drop edges that point at files no longer present in *snapshot*."""
    for fingerprint in snapshot.files.values():
        fingerprint.depends_on = [p for p in fingerprint.depends_on if p in snapshot.files]
        fingerprint.dependents = [p for p in fingerprint.dependents if p in snapshot.files]


def build_fingerprint(
    path: Path,
    root: Path,
    raw: bytes,
    chunks: Sequence[Chunk],
    known_paths: Iterable[str],
) -> FileFingerprint:
    """Create the fingerprint of a freshly extracted file."""

    stat = path.stat()
    symbols: dict[str, None] = {}
    imports: dict[str, None] = {}
    references: dict[str, None] = {}
    for chunk in chunks:
        for name in chunk.symbol_names():
            symbols.setdefault(name, None)
        for item in chunk.imports:
            imports.setdefault(item.module, None)
        for name in chunk.references:
            references.setdefault(name, None)
    file_path = str(path)
    return FileFingerprint(
        path=file_path,
        relative_path=path.relative_to(root).as_posix(),
        last_modified=stat.st_mtime,
        size=len(raw),
        content_hash=content_hash(raw),
        chunk_ids=[chunk.id for chunk in chunks],
        symbols=list(symbols),
        imports=list(imports),
        references=list(references),
        depends_on=resolve_dependencies(file_path, imports, known_paths),
        indexed_at=time.time(),
    )


@dataclass(slots=True)
class SnapshotStats:
    has_index: bool
    total_files: int = 0
    total_chunks: int = 0
    last_indexed: str | None = None
    indexing_method: str = "none"
    oldest_file: float | None = None
    newest_file: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "has_index": self.has_index,
            "total_files": self.total_files,
            "total_chunks": self.total_chunks,
            "last_indexed": self.last_indexed,
            "indexing_method": self.indexing_method,
            "oldest_file": self.oldest_file,
            "newest_file": self.newest_file,
        }


def stats(snapshot: IndexSnapshot | None) -> SnapshotStats:
    if snapshot is None:
        return SnapshotStats(has_index=False)
    modified = [item.last_modified for item in snapshot.files.values()]
    return SnapshotStats(
        has_index=True,
        total_files=snapshot.total_files,
        total_chunks=snapshot.total_chunks,
        last_indexed=snapshot.last_indexed,
        indexing_method=snapshot.indexing_method,
        oldest_file=min(modified) if modified else None,
        newest_file=max(modified) if modified else None,
    )


def optimize(snapshot: IndexSnapshot) -> list[str]:
    """Remove fingerprints of files that vanished from disk; return their paths."""
    missing = [path for path in snapshot.files if not os.path.exists(path)]
    for path in missing:
        remove_file(snapshot, path)
    prune_edges(snapshot)
    snapshot.refresh_totals()
    if missing:
        logger.info("Dropped %d orphaned fingerprints", len(missing))
    return missing


class SnapshotStore:
    """One JSON snapshot per codebase under the data directory."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, namespace: str) -> Path:
        return self.data_dir / f"{namespace}-incremental.json"

    def load(self, codebase: Path | str) -> IndexSnapshot | None:
        path = self.path_for(namespace_for_path(codebase))
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return IndexSnapshot.from_dict(payload)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable snapshot %s: %s", path, exc)
            return None

    def save(self, snapshot: IndexSnapshot) -> Path:
        snapshot.refresh_totals()
        path = self.path_for(snapshot.namespace)
        atomic_write_json(path, snapshot.to_dict())
        return path

    def delete(self, codebase: Path | str) -> bool:
        path = self.path_for(namespace_for_path(codebase))
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


def force_full_reindex(store: SnapshotStore, codebase: Path | str) -> bool:
    """Forget the snapshot of *codebase* so the next run rebuilds everything."""
    removed = store.delete(codebase)
    if removed:
        logger.info("Removed incremental snapshot for %s", codebase)
    return removed
