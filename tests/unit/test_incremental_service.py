import os
import time
from pathlib import Path

from codex_context.models import FileFingerprint, IndexSnapshot
from codex_context.services import incremental_service as inc
from codex_context.utils import content_hash


def _fingerprint(path, *, depends_on=(), imports=(), data=None, age_hours=48.0):
    raw = data if data is not None else Path(path).read_bytes()
    stat = os.stat(path)
    return FileFingerprint(
        path=str(path),
        relative_path=os.path.basename(path),
        last_modified=stat.st_mtime,
        size=len(raw),
        content_hash=content_hash(raw),
        depends_on=list(depends_on),
        imports=list(imports),
        indexed_at=time.time() - age_hours * 3600,
    )


def _snapshot(*fingerprints):
    snapshot = IndexSnapshot(codebase_path="/repo", namespace="mcp_test", last_indexed="")
    for fingerprint in fingerprints:
        inc.register_file(snapshot, fingerprint)
    return snapshot


def _write(path, text, mtime=None):
    path.write_text(text)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)


def test_no_snapshot_marks_everything_new(tmp_path):
    a = _write(tmp_path / "a.ts", "export const a = 1;\n")

    changes = inc.compute_change_set([a, a], None)

    assert changes.new_files == [a]
    assert changes.modified_files == changes.deleted_files == changes.unchanged_files == []


def test_reindex_without_changes_is_noop(tmp_path):
    old = time.time() - 7 * 24 * 3600
    a = _write(tmp_path / "a.ts", "export const a = 1;\n", old)
    b = _write(tmp_path / "b.ts", "import { a } from './a';\n", old)
    snapshot = _snapshot(_fingerprint(a), _fingerprint(b, depends_on=[a]))

    changes = inc.compute_change_set([a, b], snapshot)

    assert changes.new_files == []
    assert changes.modified_files == []
    assert changes.deleted_files == []
    assert sorted(changes.unchanged_files) == sorted([a, b])
    assert changes.dependency_changes == []
    assert changes.is_noop


def test_change_set_partitions_current_paths(tmp_path):
    old = time.time() - 7 * 24 * 3600
    kept = _write(tmp_path / "kept.ts", "const kept = 1;\n", old)
    grown = _write(tmp_path / "grown.ts", "const grown = 1;\n", old)
    fresh = _write(tmp_path / "fresh.ts", "const fresh = 1;\n", old)
    gone = str(tmp_path / "gone.ts")
    snapshot = _snapshot(
        _fingerprint(kept),
        _fingerprint(grown),
        FileFingerprint(gone, "gone.ts", old, 3, "x"),
    )
    _write(tmp_path / "grown.ts", "const grown = 12345;\n", old)

    current = [kept, grown, fresh]
    changes = inc.compute_change_set(current, snapshot)

    assert changes.new_files == [fresh]
    assert changes.modified_files == [grown]
    assert changes.unchanged_files == [kept]
    assert changes.deleted_files == [gone]
    buckets = changes.new_files + changes.modified_files + changes.unchanged_files
    assert sorted(buckets) == sorted(current)


def test_newer_mtime_marks_file_modified(tmp_path):
    old = time.time() - 7 * 24 * 3600
    a = _write(tmp_path / "a.ts", "const a = 1;\n", old)
    snapshot = _snapshot(_fingerprint(a))
    os.utime(a, (old + 60, old + 60))

    assert inc.compute_change_set([a], snapshot).modified_files == [a]


def test_hash_only_checked_inside_window(tmp_path):
    stamp = time.time() - 3600
    a = _write(tmp_path / "a.ts", "const a = 1;\n", stamp)
    fingerprint = _fingerprint(a)
    fingerprint.content_hash = content_hash("const b = 2;\n")
    snapshot = _snapshot(fingerprint)

    inside = inc.compute_change_set([a], snapshot, hash_check_hours=24)
    outside = inc.compute_change_set([a], snapshot, hash_check_hours=0.5)

    assert inside.modified_files == [a]
    assert outside.unchanged_files == [a]


def test_unreadable_file_counts_as_modified(tmp_path, monkeypatch):
    old = time.time() - 7 * 24 * 3600
    a = _write(tmp_path / "a.ts", "const a = 1;\n", old)
    snapshot = _snapshot(_fingerprint(a))
    real_stat = os.stat

    def failing_stat(path, *args, **kwargs):
        if str(path) == a:
            raise PermissionError("denied")
        return real_stat(path, *args, **kwargs)

    monkeypatch.setattr(inc.os, "stat", failing_stat)

    assert inc.compute_change_set([a], snapshot).modified_files == [a]


def test_modified_dependency_propagates_to_dependents(tmp_path):
    old = time.time() - 7 * 24 * 3600
    x = _write(tmp_path / "x.ts", "export const x = 1;\n", old)
    y = _write(tmp_path / "y.ts", "import { x } from './x';\n", old)
    z = _write(tmp_path / "z.ts", "export const z = 3;\n", old)
    snapshot = _snapshot(_fingerprint(x), _fingerprint(y, depends_on=[x]), _fingerprint(z))
    _write(tmp_path / "x.ts", "export const x = 100;\n", old + 120)

    changes = inc.compute_change_set([x, y, z], snapshot)

    assert changes.modified_files == [x]
    assert y in changes.unchanged_files
    assert changes.dependency_changes == [y]
    assert changes.files_to_process == [x, y]


def test_new_file_wakes_importers_that_now_resolve(tmp_path):
    old = time.time() - 7 * 24 * 3600
    y = _write(tmp_path / "y.ts", "import { helper } from './helper';\n", old)
    snapshot = _snapshot(_fingerprint(y, imports=["./helper"]))
    helper = _write(tmp_path / "helper.ts", "export const helper = 1;\n")

    changes = inc.compute_change_set([y, helper], snapshot)

    assert changes.new_files == [helper]
    assert changes.dependency_changes == [y]


def test_register_file_keeps_edges_symmetric():
    snapshot = IndexSnapshot(codebase_path="/repo", namespace="mcp_test", last_indexed="")
    a = FileFingerprint("/repo/a.ts", "a.ts", 1.0, 1, "h")
    b = FileFingerprint("/repo/b.ts", "b.ts", 1.0, 1, "h", depends_on=["/repo/a.ts"])
    c = FileFingerprint("/repo/c.ts", "c.ts", 1.0, 1, "h", depends_on=["/repo/a.ts", "/repo/b.ts"])
    for fingerprint in (a, b, c):
        inc.register_file(snapshot, fingerprint)

    _assert_symmetric(snapshot)
    assert snapshot.files["/repo/a.ts"].dependents == ["/repo/b.ts", "/repo/c.ts"]

    inc.register_file(snapshot, FileFingerprint("/repo/c.ts", "c.ts", 2.0, 1, "h2"))
    _assert_symmetric(snapshot)
    assert snapshot.files["/repo/a.ts"].dependents == ["/repo/b.ts"]

    inc.remove_file(snapshot, "/repo/a.ts")
    _assert_symmetric(snapshot)
    assert snapshot.files["/repo/b.ts"].depends_on == []


def _assert_symmetric(snapshot):
    for path, fingerprint in snapshot.files.items():
        for dependency in fingerprint.depends_on:
            if dependency in snapshot.files:
                assert path in snapshot.files[dependency].dependents
        for dependent in fingerprint.dependents:
            assert path in snapshot.files[dependent].depends_on


def test_resolve_dependencies_handles_extensions_and_index_files():
    known = ["/repo/src/util.ts", "/repo/src/lib/index.js", "/repo/src/view.tsx", "/repo/src/app.ts"]

    resolved = inc.resolve_dependencies(
        "/repo/src/app.ts",
        ["./util", "./lib", "./view.js", "react", "./missing", "./app"],
        known,
    )

    assert resolved == ["/repo/src/lib/index.js", "/repo/src/util.ts", "/repo/src/view.tsx"]


def test_snapshot_store_round_trip_and_corruption(tmp_path):
    store = inc.SnapshotStore(tmp_path)
    codebase = tmp_path / "project"
    codebase.mkdir()
    snapshot = IndexSnapshot(
        codebase_path=str(codebase),
        namespace=inc.namespace_for_path(codebase),
        last_indexed=inc.utc_now_iso(),
    )
    snapshot.files["/p/a.ts"] = FileFingerprint("/p/a.ts", "a.ts", 1.0, 1, "h", chunk_ids=["c1"])

    path = store.save(snapshot)
    loaded = store.load(codebase)

    assert path.name.endswith("-incremental.json")
    assert loaded is not None
    assert loaded.total_chunks == 1
    path.write_text("{not json")
    assert store.load(codebase) is None
    assert store.delete(codebase) is True
    assert store.delete(codebase) is False


def test_optimize_drops_vanished_files(tmp_path):
    present = _write(tmp_path / "present.ts", "const p = 1;\n")
    snapshot = _snapshot(
        _fingerprint(present),
        FileFingerprint(str(tmp_path / "vanished.ts"), "vanished.ts", 1.0, 1, "h", chunk_ids=["v"]),
    )

    removed = inc.optimize(snapshot)

    assert removed == [str(tmp_path / "vanished.ts")]
    assert list(snapshot.files) == [present]
    assert snapshot.total_files == 1


def test_stats_reports_snapshot_summary():
    assert inc.stats(None).has_index is False
    snapshot = IndexSnapshot(codebase_path="/r", namespace="n", last_indexed="t", indexing_method="incremental")
    snapshot.files["/r/a"] = FileFingerprint("/r/a", "a", 5.0, 1, "h", chunk_ids=["1", "2"])
    snapshot.files["/r/b"] = FileFingerprint("/r/b", "b", 9.0, 1, "h")
    snapshot.refresh_totals()

    summary = inc.stats(snapshot)

    assert summary.total_chunks == 2
    assert (summary.oldest_file, summary.newest_file) == (5.0, 9.0)
    assert summary.indexing_method == "incremental"
