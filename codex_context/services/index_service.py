"""Logic helpers for the `codex-context index` command."""

from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from ..config import DEFAULT_UPLOAD_BATCH_SIZE, Config, data_dir, load_config
from ..embedding import Embedder, create_embedder
from ..models import ChangeSet, Chunk, IndexSnapshot
from ..stores.base import UpsertRow, VectorStore, create_store
from ..text import Messages
from ..utils import (
    collect_files,
    detect_language,
    namespace_for_path,
    read_source,
    resolve_directory,
)
from .chunk_service import ChunkExtractor
from .incremental_service import (
    SnapshotStats,
    SnapshotStore,
    build_fingerprint,
    compute_change_set,
    force_full_reindex,
    prune_edges,
    register_file,
    remove_file,
    stats,
    utc_now_iso,
)
from .lock_service import LockHeldError, LockManager
from .registry_service import (
    REGISTRY_FILENAME,
    CodebaseRegistry,
    IndexedCodebase,
    open_registry,
    update_registry,
)
from .subchunk_service import SubChunker, split_chunks

logger = logging.getLogger(__name__)

_EXTERNAL_ERRORS = (RuntimeError, OSError, sqlite3.Error)


class IndexStatus(str, Enum):
    EMPTY = "empty"
    UP_TO_DATE = "up_to_date"
    STORED = "stored"
    PARTIAL = "partial"
    LOCKED = "locked"
    FAILED = "failed"


@dataclass(slots=True)
class FileError:
    file: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"file": self.file, "error": self.error}


@dataclass(slots=True)
class IndexRequest:
    directory: Path
    force: bool = False
    include_hidden: bool = False
    respect_gitignore: bool = True
    extensions: tuple[str, ...] = ()


@dataclass(slots=True)
class IndexResult:
    success: bool
    status: IndexStatus
    namespace: str = ""
    files_processed: int = 0
    chunks_created: int = 0
    chunks_deleted: int = 0
    errors: list[FileError] = field(default_factory=list)
    message: str = ""
    processing_time_ms: int = 0
    change_set: ChangeSet | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "status": self.status.value,
            "namespace": self.namespace,
            "filesProcessed": self.files_processed,
            "chunksCreated": self.chunks_created,
            "chunksDeleted": self.chunks_deleted,
            "errors": [item.to_dict() for item in self.errors],
            "message": self.message,
            "processingTimeMs": self.processing_time_ms,
        }


@dataclass(slots=True)
class _Extracted:
    path: str
    raw: bytes = b""
    chunks: list[Chunk] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class IndexStatusReport:
    path: str
    namespace: str
    entry: IndexedCodebase | None
    snapshot: SnapshotStats
    locked: bool = False
    lock: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "path": self.path,
            "namespace": self.namespace,
            "registry": self.entry.to_dict() if self.entry is not None else None,
            "snapshot": self.snapshot.to_dict(),
            "locked": self.locked,
            "lock": self.lock,
        }


def index_lock_key(namespace: str) -> str:
    return f"index_{namespace}"


def index_codebase(
    request: IndexRequest,
    *,
    config: Config | None = None,
    embedder: Embedder | None = None,
    store: VectorStore | None = None,
    registry: CodebaseRegistry | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> IndexResult:
    """Index (or incrementally refresh) a codebase and return a structured result."""

    started = time.perf_counter()
    try:
        directory = resolve_directory(request.directory)
    except (FileNotFoundError, NotADirectoryError) as exc:
        return IndexResult(success=False, status=IndexStatus.FAILED, message=str(exc))
    config = config or load_config()
    root = data_dir()
    namespace = namespace_for_path(directory)
    locks = LockManager(root, config.lock_stale_minutes)
    lock_key = index_lock_key(namespace)
    lock = locks.acquire(lock_key)
    if not lock.acquired:
        return IndexResult(
            success=False, status=IndexStatus.LOCKED, namespace=namespace, message=lock.message
        )
    registry = registry or CodebaseRegistry(root / REGISTRY_FILENAME)
    try:
        run = _IndexRun(
            request,
            directory=directory,
            namespace=namespace,
            config=config,
            embedder=embedder,
            store=store or create_store(config, root),
            registry=registry,
            locks=locks,
            snapshots=SnapshotStore(root),
            sleep=sleep,
        )
        result = run.execute()
    except _EXTERNAL_ERRORS as exc:
        logger.error("Indexing %s failed: %s", directory, exc)
        try:
            update_registry(
                registry, locks, lambda entries: entries.register_failure(directory, str(exc))
            )
        except LockHeldError as busy:
            logger.warning("Could not record the failure of %s: %s", directory, busy)
        result = IndexResult(
            success=False,
            status=IndexStatus.FAILED,
            namespace=namespace,
            message=Messages.ERROR_INDEX_FAILED.format(reason=exc),
        )
    finally:
        locks.release(lock_key)
    result.processing_time_ms = int((time.perf_counter() - started) * 1000)
    return result


class _IndexRun:
    def __init__(
        self,
        request: IndexRequest,
        *,
        directory: Path,
        namespace: str,
        config: Config,
        embedder: Embedder | None,
        store: VectorStore,
        registry: CodebaseRegistry,
        locks: LockManager,
        snapshots: SnapshotStore,
        sleep: Callable[[float], None],
    ) -> None:
        self.request = request
        self.directory = directory
        self.namespace = namespace
        self.config = config
        self._embedder = embedder
        self.store = store
        self.registry = registry
        self.locks = locks
        self.snapshots = snapshots
        self.sleep = sleep
        self.extractor = ChunkExtractor()
        self.splitter = SubChunker()
        self.errors: list[FileError] = []

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = create_embedder(self.config)
        return self._embedder

    def execute(self) -> IndexResult:
        logger.info(Messages.INFO_INDEX_RUNNING.format(path=self.directory))
        paths = [
            str(path)
            for path in collect_files(
                self.directory,
                include_hidden=self.request.include_hidden,
                extensions=self.request.extensions,
                respect_gitignore=self.request.respect_gitignore,
            )
        ]
        if self.request.force:
            force_full_reindex(self.snapshots, self.directory)
            self.store.delete_namespace(self.namespace)
            previous = None
        else:
            previous = self.snapshots.load(self.directory)

        if not paths and previous is None:
            return IndexResult(
                success=True,
                status=IndexStatus.EMPTY,
                namespace=self.namespace,
                message=Messages.INFO_NO_FILES.format(path=self.directory),
            )

        changes = compute_change_set(
            paths, previous, hash_check_hours=self.config.hash_check_hours
        )
        logger.info(
            "Changes: %d new, %d modified, %d deleted, %d via dependencies, %d unchanged",
            len(changes.new_files),
            len(changes.modified_files),
            len(changes.deleted_files),
            len(changes.dependency_changes),
            len(changes.unchanged_files),
        )
        if changes.is_noop and previous is not None:
            update_registry(
                self.registry,
                self.locks,
                lambda entries: entries.register(
                    self.directory, self.namespace, previous.total_chunks
                ),
            )
            return IndexResult(
                success=True,
                status=IndexStatus.UP_TO_DATE,
                namespace=self.namespace,
                message=Messages.INFO_NO_CHANGES,
                change_set=changes,
            )

        snapshot = previous or IndexSnapshot(
            codebase_path=str(self.directory),
            namespace=self.namespace,
            last_indexed=utc_now_iso(),
        )
        extracted = self._extract_all(changes.files_to_process)
        uploaded, created = self._upload(extracted)
        deleted, uncleaned = self._delete_stale(snapshot, uploaded, changes.deleted_files)

        # Files whose stale chunks survived keep their old fingerprint so the
        # next run detects them again and retries the delete.
        stored = [item for item in uploaded if item.path not in uncleaned]
        for item in stored:
            register_file(
                snapshot,
                build_fingerprint(Path(item.path), self.directory, item.raw, item.chunks, paths),
            )
        for path in changes.deleted_files:
            if path not in uncleaned:
                remove_file(snapshot, path)
        prune_edges(snapshot)
        snapshot.last_indexed = utc_now_iso()
        snapshot.indexing_method = "incremental" if previous is not None else "full"
        self.snapshots.save(snapshot)

        processed = len(stored)
        if processed or previous is not None or not self.errors:
            total = snapshot.total_chunks
            update_registry(
                self.registry,
                self.locks,
                lambda entries: entries.register(self.directory, self.namespace, total),
            )
        else:
            reason = self.errors[0].error
            update_registry(
                self.registry,
                self.locks,
                lambda entries: entries.register_failure(self.directory, reason),
            )

        message = Messages.INFO_INDEX_DONE.format(
            files=processed,
            plural="" if processed == 1 else "s",
            created=created,
            deleted=deleted,
        )
        failed_files = {item.file for item in self.errors}
        if failed_files:
            message = f"{message} " + Messages.INFO_INDEX_PARTIAL.format(
                count=len(failed_files), plural="" if len(failed_files) == 1 else "s"
            )
        return IndexResult(
            success=bool(processed) or not self.errors,
            status=IndexStatus.PARTIAL if self.errors else IndexStatus.STORED,
            namespace=self.namespace,
            files_processed=processed,
            chunks_created=created,
            chunks_deleted=deleted,
            errors=list(self.errors),
            message=message,
            change_set=changes,
        )

    def _extract_all(self, paths: Sequence[str]) -> list[_Extracted]:
        if not paths:
            return []
        workers = min(max(int(self.config.extract_concurrency or 1), 1), len(paths))
        if workers <= 1:
            results = [self._extract(path) for path in paths]
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(self._extract, paths))
        kept: list[_Extracted] = []
        for item in results:
            if item.error is not None:
                self.errors.append(FileError(file=item.path, error=item.error))
            else:
                kept.append(item)
        return kept

    def _extract(self, path: str) -> _Extracted:
        file_path = Path(path)
        try:
            raw, text = read_source(file_path)
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            return _Extracted(path=path, error=Messages.ERROR_READ_FAILED.format(reason=exc))
        result = self.extractor.extract(
            text,
            detect_language(file_path),
            path,
            file_path.relative_to(self.directory).as_posix(),
        )
        for problem in result.parse_errors:
            logger.debug("%s: %s", path, problem)
        chunks = [
            chunk for chunk in split_chunks(result.chunks, self.splitter) if chunk.content.strip()
        ]
        return _Extracted(path=path, raw=raw, chunks=chunks)

    def _upload(self, extracted: Sequence[_Extracted]) -> tuple[list[_Extracted], int]:
        """Embed and upsert chunks in ordered batches; return the files that fully succeeded."""

        batch_size = self.config.upload_batch_size or DEFAULT_UPLOAD_BATCH_SIZE
        pending = [(item.path, chunk) for item in extracted for chunk in item.chunks]
        failed: set[str] = set()
        created = 0
        batches = [pending[i : i + batch_size] for i in range(0, len(pending), batch_size)]
        for number, batch in enumerate(batches, start=1):
            files = {path for path, _ in batch}
            try:
                vectors = self.embedder.embed_texts([chunk.content for _, chunk in batch])
                self.store.upsert(
                    self.namespace,
                    [UpsertRow(chunk=chunk, vector=vector) for (_, chunk), vector in zip(batch, vectors)],
                )
            except _EXTERNAL_ERRORS as exc:
                logger.error("Upload batch %d/%d failed: %s", number, len(batches), exc)
                reason = Messages.ERROR_UPLOAD_BATCH.format(batch=number, reason=exc)
                for path in sorted(files - failed):
                    self.errors.append(FileError(file=path, error=reason))
                failed.update(files)
            else:
                created += len(batch)
                logger.debug("Uploaded batch %d/%d (%d chunks)", number, len(batches), len(batch))
            if number < len(batches) and self.config.upload_delay > 0:
                self.sleep(self.config.upload_delay)
        return [item for item in extracted if item.path not in failed], created

    def _delete_stale(
        self,
        snapshot: IndexSnapshot,
        uploaded: Sequence[_Extracted],
        deleted_files: Sequence[str],
    ) -> tuple[int, set[str]]:
        """Delete chunk ids that were not re-emitted; return the count and the files left unclean."""

        stale: dict[str, list[str]] = {}
        for item in uploaded:
            fresh = {chunk.id for chunk in item.chunks}
            fingerprint = snapshot.files.get(item.path)
            if fingerprint is not None:
                previous = set(fingerprint.chunk_ids)
            else:
                previous = set(self.store.chunk_ids_for_file(self.namespace, item.path))
            if previous - fresh:
                stale[item.path] = sorted(previous - fresh)
        for path in deleted_files:
            fingerprint = snapshot.files.get(path)
            if fingerprint is not None and fingerprint.chunk_ids:
                stale[path] = list(fingerprint.chunk_ids)
        ids = [chunk_id for group in stale.values() for chunk_id in group]
        if not ids:
            return 0, set()
        try:
            self.store.delete_by_ids(self.namespace, ids)
        except _EXTERNAL_ERRORS as exc:
            logger.error("Could not delete %d stale chunks: %s", len(ids), exc)
            reason = Messages.ERROR_DELETE_STALE.format(reason=exc)
            for path in sorted(stale):
                self.errors.append(FileError(file=path, error=reason))
            return 0, set(stale)
        return len(ids), set()


def clear_index(
    directory: Path | str,
    *,
    config: Config | None = None,
    store: VectorStore | None = None,
    registry: CodebaseRegistry | None = None,
) -> bool:
    """Remove the stored vectors, snapshot and registry entry of *directory*."""

    config = config or load_config()
    root = data_dir()
    path = Path(directory).expanduser().resolve()
    registry = registry or open_registry(root)
    namespace = registry.namespace_for(path)
    locks = LockManager(root, config.lock_stale_minutes)
    with locks.hold(index_lock_key(namespace)):
        active_store = store or create_store(config, root)
        had_vectors = active_store.namespace_exists(namespace)
        active_store.delete_namespace(namespace)
        removed_snapshot = SnapshotStore(root).delete(path)
        removed_entry = update_registry(registry, locks, lambda entries: entries.remove(path))
    return had_vectors or removed_snapshot or removed_entry


def index_status(
    directory: Path | str | None = None,
    *,
    registry: CodebaseRegistry | None = None,
) -> list[IndexStatusReport]:
    """Registry entries joined with snapshot statistics, for one or all codebases."""

    root = data_dir()
    registry = registry or open_registry(root)
    snapshots = SnapshotStore(root)
    locks = LockManager(root)
    if directory is not None:
        path = Path(directory).expanduser().resolve()
        targets = [(str(path), registry.get(path))]
    else:
        targets = [(entry.path, entry) for entry in registry.indexed_codebases()]
    reports: list[IndexStatusReport] = []
    for path, entry in targets:
        namespace = entry.namespace if entry is not None else namespace_for_path(path)
        key = index_lock_key(namespace)
        locked = locks.is_locked(key)
        reports.append(
            IndexStatusReport(
                path=path,
                namespace=namespace,
                entry=entry,
                snapshot=stats(snapshots.load(path)),
                locked=locked,
                lock=locks.info(key) if locked else None,
            )
        )
    return reports
