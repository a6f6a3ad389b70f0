from pathlib import Path

import pytest

from codex_context import utils


def test_normalize_extensions_dedupes_and_prefixes():
    assert utils.normalize_extensions(["TS", ".ts", "js", "", "."]) == (".js", ".ts")
    assert utils.normalize_extensions(None) == ()


def test_detect_language_by_extension():
    assert utils.detect_language("src/app.ts") == "typescript"
    assert utils.detect_language("types/globals.d.ts") == "typescript"
    assert utils.detect_language("ui/Button.tsx") == "tsx"
    assert utils.detect_language("lib/index.mjs") == "javascript"
    assert utils.detect_language("tool.py") == "python"
    assert utils.detect_language("README.md") == "text"


def test_namespace_for_path_is_stable(tmp_path):
    first = utils.namespace_for_path(tmp_path)
    second = utils.namespace_for_path(str(tmp_path) + "/")

    assert first == second
    assert first.startswith("mcp_")
    assert len(first) == len("mcp_") + 16
    assert utils.namespace_for_path(tmp_path / "other") != first


def test_decode_source_falls_back_for_non_utf8():
    raw = ("const label = 'Caf\u00e9 cr\u00e8me br\u00fbl\u00e9e';\n" * 3).encode("latin-1")

    decoded = utils.decode_source(raw)

    assert decoded.startswith("const label = ")
    assert decoded.count("\n") == 3


def test_collect_files_respects_gitignore_and_hidden(tmp_path):
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    (root / ".gitignore").write_text("generated/\n*.min.js\n")
    (root / "src").mkdir()
    (root / "src" / "main.ts").write_text("export const a = 1;\n")
    (root / "src" / "bundle.min.js").write_text("var a=1;\n")
    (root / "generated").mkdir()
    (root / "generated" / "api.ts").write_text("export const b = 2;\n")
    (root / ".hidden").mkdir()
    (root / ".hidden" / "secret.ts").write_text("export const c = 3;\n")
    (root / "node_modules" / "pkg").mkdir(parents=True)
    (root / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1;\n")
    (root / "notes.md").write_text("# notes\n")

    files = utils.collect_files(root)
    assert [path.relative_to(root).as_posix() for path in files] == ["src/main.ts"]

    with_hidden = utils.collect_files(root, include_hidden=True, respect_gitignore=False)
    relative = {path.relative_to(root).as_posix() for path in with_hidden}
    assert relative == {
        ".hidden/secret.ts",
        "generated/api.ts",
        "src/bundle.min.js",
        "src/main.ts",
    }


def test_collect_files_filters_extensions(tmp_path):
    (tmp_path / "a.ts").write_text("let a = 1;\n")
    (tmp_path / "b.js").write_text("let b = 1;\n")

    files = utils.collect_files(tmp_path, extensions=["js"])

    assert [path.name for path in files] == ["b.js"]


def test_resolve_directory_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        utils.resolve_directory(tmp_path / "missing")
    file_path = tmp_path / "file.txt"
    file_path.write_text("x")
    with pytest.raises(NotADirectoryError):
        utils.resolve_directory(file_path)


def test_atomic_write_json_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "state.json"

    utils.atomic_write_json(target, {"value": 1})
    utils.atomic_write_json(target, {"value": 2})

    assert target.read_text().strip().endswith("}")
    assert '"value": 2' in target.read_text()
    assert [path.name for path in target.parent.iterdir()] == ["state.json"]


def test_format_path_relative_to_base(tmp_path):
    assert utils.format_path(tmp_path / "src" / "a.ts", tmp_path) == "./src/a.ts"
    assert utils.format_path(Path("/elsewhere/a.ts"), tmp_path) == "/elsewhere/a.ts"


def test_ensure_positive():
    assert utils.ensure_positive(3, "limit") == 3
    with pytest.raises(ValueError):
        utils.ensure_positive(0, "limit")
