from dataclasses import replace

import pytest

from codex_context.embedding import Embedder
from codex_context.services.incremental_service import SnapshotStore
from codex_context.services.index_service import (
    IndexRequest,
    IndexStatus,
    clear_index,
    index_codebase,
    index_lock_key,
    index_status,
)
from codex_context.services.lock_service import LockManager
from codex_context.services.registry_service import REGISTRY_LOCK_KEY, open_registry
from codex_context.stores.local import LocalVectorStore
from codex_context.utils import namespace_for_path

from conftest import HashingBackend


@pytest.fixture
def store(tmp_path):
    store = LocalVectorStore(tmp_path / "vectors.db")
    yield store
    store.close()


@pytest.fixture
def run_index(data_home, fast_config, embedder, store):
    def _run(directory, *, config=None, embedder_override=None, **options):
        return index_codebase(
            IndexRequest(directory=directory, **options),
            config=config or fast_config,
            embedder=embedder_override or embedder,
            store=store,
            sleep=lambda _: None,
        )

    return _run


def test_first_index_stores_every_file(run_index, codebase, store, data_home):
    result = run_index(codebase)

    assert result.success
    assert result.status is IndexStatus.STORED
    assert result.files_processed == 3
    assert result.chunks_created > 0
    assert result.namespace == namespace_for_path(codebase)
    assert store.namespace_exists(result.namespace)

    snapshot = SnapshotStore(data_home).load(codebase)
    assert snapshot is not None
    assert snapshot.indexing_method == "full"
    assert snapshot.total_files == 3
    assert snapshot.total_chunks == result.chunks_created
    app = snapshot.files[str(codebase / "src" / "app.ts")]
    assert app.depends_on == [str(codebase / "src" / "math.ts")]
    assert open_registry(data_home).is_indexed(codebase)


def test_second_run_is_up_to_date(run_index, codebase, backend):
    run_index(codebase)
    calls = len(backend.calls)

    result = run_index(codebase)

    assert result.success
    assert result.status is IndexStatus.UP_TO_DATE
    assert result.files_processed == 0
    assert len(backend.calls) == calls


def test_modification_reprocesses_file_and_dependents(run_index, codebase, data_home):
    run_index(codebase)
    math_path = codebase / "src" / "math.ts"
    math_path.write_text(
        math_path.read_text() + "\nexport const PI_APPROX = 3.14;\n", encoding="utf-8"
    )

    result = run_index(codebase)

    assert result.status is IndexStatus.STORED
    assert result.change_set.modified_files == [str(math_path)]
    assert result.change_set.dependency_changes == [str(codebase / "src" / "app.ts")]
    assert result.files_processed == 2
    assert SnapshotStore(data_home).load(codebase).indexing_method == "incremental"


def test_deleted_file_chunks_are_removed(run_index, codebase, store, data_home):
    first = run_index(codebase)
    greeter = codebase / "lib" / "greeter.js"
    stored_ids = SnapshotStore(data_home).load(codebase).files[str(greeter)].chunk_ids
    greeter.unlink()

    result = run_index(codebase)

    assert result.success
    assert result.change_set.deleted_files == [str(greeter)]
    assert result.chunks_deleted == len(stored_ids)
    assert store.chunk_ids_for_file(first.namespace, str(greeter)) == []
    snapshot = SnapshotStore(data_home).load(codebase)
    assert str(greeter) not in snapshot.files


class _FailingBackend(HashingBackend):
    def embed(self, texts):
        if any("greetVisitor" in text for text in texts):
            raise RuntimeError("embedding service unavailable")
        return super().embed(texts)


def test_failed_batch_leaves_file_for_next_run(run_index, codebase, fast_config, data_home):
    config = replace(fast_config, upload_batch_size=1)
    greeter = str(codebase / "lib" / "greeter.js")

    result = run_index(codebase, config=config, embedder_override=Embedder(_FailingBackend()))

    assert result.success
    assert result.status is IndexStatus.PARTIAL
    assert {error.file for error in result.errors} == {greeter}
    assert "embedding service unavailable" in result.errors[0].error
    assert greeter not in SnapshotStore(data_home).load(codebase).files

    retry = run_index(codebase, config=config)

    assert retry.status is IndexStatus.STORED
    assert retry.change_set.new_files == [greeter]
    assert retry.files_processed == 1


def test_every_batch_failing_marks_codebase_failed(run_index, codebase, data_home):
    class Broken:
        def embed(self, texts):
            raise RuntimeError("offline")

    result = run_index(codebase, embedder_override=Embedder(Broken()))

    assert not result.success
    assert result.status is IndexStatus.PARTIAL
    assert result.files_processed == 0
    entry = open_registry(data_home).get(codebase)
    assert entry is not None and entry.failed


def test_held_lock_reports_locked(run_index, codebase, data_home, backend):
    locks = LockManager(data_home)
    assert locks.acquire(index_lock_key(namespace_for_path(codebase))).acquired

    result = run_index(codebase)

    assert not result.success
    assert result.status is IndexStatus.LOCKED
    assert "already in progress" in result.message
    assert backend.calls == []


def test_lock_is_released_after_run(run_index, codebase, data_home):
    run_index(codebase)

    assert not LockManager(data_home).is_locked(index_lock_key(namespace_for_path(codebase)))


def test_force_rebuilds_from_scratch(run_index, codebase, data_home):
    run_index(codebase)

    result = run_index(codebase, force=True)

    assert result.status is IndexStatus.STORED
    assert result.files_processed == 3
    assert SnapshotStore(data_home).load(codebase).indexing_method == "full"


def test_empty_and_missing_directories(run_index, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()

    assert run_index(empty).status is IndexStatus.EMPTY
    missing = run_index(tmp_path / "missing")
    assert missing.status is IndexStatus.FAILED
    assert not missing.success


def test_extension_filter_limits_files(run_index, codebase):
    result = run_index(codebase, extensions=(".js",))

    assert result.files_processed == 1


def test_status_and_clear(run_index, codebase, store, fast_config, data_home):
    indexed = run_index(codebase)

    reports = index_status()
    assert [report.path for report in reports] == [str(codebase)]
    assert reports[0].entry.total_chunks == indexed.chunks_created
    assert reports[0].snapshot.has_index
    assert not reports[0].locked
    assert reports[0].lock is None

    assert clear_index(codebase, config=fast_config, store=store) is True
    assert not store.namespace_exists(indexed.namespace)
    assert SnapshotStore(data_home).load(codebase) is None
    single = index_status(codebase)
    assert single[0].entry is None
    assert not single[0].snapshot.has_index
    assert clear_index(codebase, config=fast_config, store=store) is False


def test_status_reports_lock_owner(run_index, codebase, data_home):
    run_index(codebase)
    key = index_lock_key(namespace_for_path(codebase))
    LockManager(data_home).acquire(key)

    report = index_status(codebase)[0]

    assert report.locked
    assert report.lock["operation"] == key
    assert report.to_dict()["lock"]["pid"] == report.lock["pid"]


def test_failed_stale_delete_is_reported_and_retried(run_index, codebase, store, data_home, monkeypatch):
    first = run_index(codebase)
    greeter = codebase / "lib" / "greeter.js"
    known_ids = SnapshotStore(data_home).load(codebase).files[str(greeter)].chunk_ids
    greeter.unlink()

    def unavailable(namespace, ids):
        raise RuntimeError("vector store unavailable")

    with monkeypatch.context() as patch:
        patch.setattr(store, "delete_by_ids", unavailable)
        failed = run_index(codebase)

    assert not failed.success
    assert failed.status is IndexStatus.PARTIAL
    assert [error.file for error in failed.errors] == [str(greeter)]
    assert "vector store unavailable" in failed.errors[0].error
    assert failed.chunks_deleted == 0
    assert str(greeter) in SnapshotStore(data_home).load(codebase).files
    assert store.chunk_ids_for_file(first.namespace, str(greeter))
    assert open_registry(data_home).is_indexed(codebase)

    retry = run_index(codebase)

    assert retry.status is IndexStatus.STORED
    assert retry.change_set.deleted_files == [str(greeter)]
    assert retry.chunks_deleted == len(known_ids)
    assert store.chunk_ids_for_file(first.namespace, str(greeter)) == []
    assert str(greeter) not in SnapshotStore(data_home).load(codebase).files


def test_runs_on_different_codebases_keep_both_registry_entries(
    data_home, fast_config, embedder, store, codebase, tmp_path
):
    second = tmp_path / "second"
    second.mkdir()
    (second / "index.ts").write_text(
        "export function second(): number {\n  return 2;\n}\n", encoding="utf-8"
    )
    loaded_early = [open_registry(data_home), open_registry(data_home)]

    for directory, registry in zip((codebase, second), loaded_early):
        result = index_codebase(
            IndexRequest(directory=directory),
            config=fast_config,
            embedder=embedder,
            store=store,
            registry=registry,
            sleep=lambda _: None,
        )
        assert result.status is IndexStatus.STORED

    paths = {entry.path for entry in open_registry(data_home).indexed_codebases()}
    assert paths == {str(codebase), str(second)}
    assert not LockManager(data_home).is_locked(REGISTRY_LOCK_KEY)
