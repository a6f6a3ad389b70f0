import pytest

from codex_context.models import (
    CHUNK_ID_MAX_BYTES,
    ChangeSet,
    Chunk,
    FileFingerprint,
    IndexSnapshot,
    SymbolRef,
    calculate_complexity,
    make_chunk_id,
)


def _chunk(**overrides):
    data = dict(
        id="app_1-3",
        content="function a() {}\n\n",
        file_path="/repo/app.ts",
        relative_path="app.ts",
        start_line=1,
        end_line=3,
        language="typescript",
    )
    data.update(overrides)
    return Chunk(**data)


def test_make_chunk_id_is_deterministic_and_path_scoped():
    first = make_chunk_id("/repo/src/app.ts", "1-10")

    assert first == make_chunk_id("/repo/src/app.ts", "1-10")
    assert first.startswith("app_")
    assert first.endswith("_1-10")
    assert first != make_chunk_id("/repo/lib/app.ts", "1-10")


def test_make_chunk_id_stays_within_byte_budget():
    long_name = "/repo/" + "very_long_component_name_" * 6 + ".ts"

    first = make_chunk_id(long_name, "gap_100-200")
    second = make_chunk_id(long_name, "gap_100-201")

    assert len(first.encode("utf-8")) <= CHUNK_ID_MAX_BYTES
    assert first != second
    assert first == make_chunk_id(long_name, "gap_100-200")


@pytest.mark.parametrize(
    ("lines", "braces", "expected"),
    [(5, 1, "low"), (5, 3, "medium"), (50, 2, "medium"), (50, 10, "high"), (150, 0, "high")],
)
def test_calculate_complexity(lines, braces, expected):
    content = "\n".join(["x"] * lines) + "{" * braces

    assert calculate_complexity(content) == expected


def test_chunk_size_is_content_length_and_rejects_inverted_span():
    chunk = _chunk()

    assert chunk.size == len(chunk.content)
    assert chunk.line_count == 3
    with pytest.raises(ValueError):
        _chunk(start_line=5, end_line=4)


def test_chunk_unknown_type_becomes_mixed():
    assert _chunk(chunk_type="paragraph").chunk_type == "mixed"


def test_chunk_symbol_names_keep_first_seen_order():
    chunk = _chunk(
        symbols=[
            SymbolRef("Calculator", "class", 1),
            SymbolRef("sum", "method", 2, parent="Calculator"),
            SymbolRef("Calculator", "class", 3),
        ]
    )

    assert chunk.symbol_names() == ["Calculator", "sum"]
    assert chunk.to_dict()["symbols"][1]["parent"] == "Calculator"


def test_snapshot_serialization_keeps_file_metadata_pairs():
    snapshot = IndexSnapshot(codebase_path="/repo", namespace="mcp_x", last_indexed="now")
    snapshot.files["/repo/a.ts"] = FileFingerprint(
        path="/repo/a.ts",
        relative_path="a.ts",
        last_modified=10.0,
        size=4,
        content_hash="abc",
        chunk_ids=["a_1", "a_2"],
        depends_on=["/repo/b.ts"],
    )
    snapshot.refresh_totals()

    payload = snapshot.to_dict()
    restored = IndexSnapshot.from_dict(payload)

    assert payload["fileMetadata"][0][0] == "/repo/a.ts"
    assert payload["totalChunks"] == 2
    assert restored.files["/repo/a.ts"].depends_on == ["/repo/b.ts"]


def test_change_set_files_to_process_and_noop():
    changes = ChangeSet(
        new_files=["a"],
        modified_files=["b"],
        unchanged_files=["c", "d"],
        dependency_changes=["c"],
    )

    assert changes.files_to_process == ["a", "b", "c"]
    assert not changes.is_noop
    assert ChangeSet(unchanged_files=["c"]).is_noop
