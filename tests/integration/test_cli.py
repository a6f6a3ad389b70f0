from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from codex_context import __version__
from codex_context.cli import app
from codex_context.config import load_config
from codex_context.embedding import Embedder
from codex_context.services.index_service import IndexResult, IndexStatus

from conftest import HashingBackend


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def offline_embedder(monkeypatch, data_home):
    embedder = Embedder(HashingBackend())
    monkeypatch.setattr(
        "codex_context.services.index_service.create_embedder", lambda config: embedder
    )
    monkeypatch.setattr(
        "codex_context.services.search_service.create_embedder", lambda config: embedder
    )
    return embedder


def test_version_flag(runner):
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"v{__version__}" in result.stdout


def test_index_search_status_clear(runner, codebase, offline_embedder):
    indexed = runner.invoke(app, ["index", "--path", str(codebase), "--format", "json"])
    assert indexed.exit_code == 0, indexed.stdout
    payload = json.loads(indexed.stdout)
    assert payload["status"] == "stored"
    assert payload["filesProcessed"] == 3

    again = runner.invoke(app, ["index", "--path", str(codebase)])
    assert again.exit_code == 0
    assert "No files changed" in again.stdout

    found = runner.invoke(
        app,
        ["search", "Calculator", "--path", str(codebase), "--strategy", "structural", "--format", "json"],
    )
    assert found.exit_code == 0, found.stdout
    response = json.loads(found.stdout)
    assert response["success"] is True
    assert response["matches"][0]["relativePath"] == "src/app.ts"
    assert response["metadata"]["strategy"] == "structural"

    table = runner.invoke(app, ["search", "Calculator", "--path", str(codebase), "-C", "1"])
    assert table.exit_code == 0
    assert "codex-context search results" in table.stdout

    status = runner.invoke(app, ["status", "--format", "json"])
    assert status.exit_code == 0
    reports = json.loads(status.stdout)
    assert reports[0]["path"] == str(codebase)
    assert reports[0]["snapshot"]["has_index"] is True

    cleared = runner.invoke(app, ["clear", "--path", str(codebase)])
    assert cleared.exit_code == 0
    assert "Removed index" in cleared.stdout

    empty = runner.invoke(app, ["status"])
    assert "No codebases indexed yet." in empty.stdout


def test_search_unindexed_codebase_fails(runner, tmp_path, offline_embedder):
    project = tmp_path / "plain"
    project.mkdir()

    result = runner.invoke(app, ["search", "anything", "--path", str(project), "--format", "json"])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["success"] is False
    assert payload["error"] == "codebase_not_indexed"
    assert "not indexed" in payload["message"]


def test_search_rejects_empty_query_and_bad_limit(runner, tmp_path):
    empty = runner.invoke(app, ["search", "   ", "--path", str(tmp_path)])
    assert empty.exit_code == 1

    bad_limit = runner.invoke(app, ["search", "x", "--path", str(tmp_path), "--limit", "0"])
    assert bad_limit.exit_code != 0


def test_search_rejects_unknown_strategy(runner, tmp_path):
    result = runner.invoke(app, ["search", "x", "--path", str(tmp_path), "--strategy", "fuzzy"])

    assert result.exit_code != 0


def test_index_locked_exits_with_error(runner, tmp_path, monkeypatch):
    monkeypatch.setattr(
        "codex_context.cli.index_codebase",
        lambda request: IndexResult(
            success=False, status=IndexStatus.LOCKED, message="Operation already in progress"
        ),
    )

    result = runner.invoke(app, ["index", "--path", str(tmp_path)])

    assert result.exit_code == 1
    assert "already in progress" in result.stdout


def test_index_partial_lists_failed_files(runner, tmp_path, monkeypatch):
    from codex_context.services.index_service import FileError

    failing = tmp_path / "broken.ts"
    monkeypatch.setattr(
        "codex_context.cli.index_codebase",
        lambda request: IndexResult(
            success=True,
            status=IndexStatus.PARTIAL,
            files_processed=2,
            errors=[FileError(file=str(failing), error="Upload batch 1 failed")],
            message="Indexed 2 files.",
        ),
    )

    result = runner.invoke(app, ["index", "--path", str(tmp_path)])

    assert result.exit_code == 0
    assert "broken.ts" in result.stdout
    assert "Upload batch 1 failed" in result.stdout


def test_config_set_and_show(runner, data_home):
    result = runner.invoke(
        app,
        [
            "config",
            "--set",
            "provider=openai",
            "--set",
            "api_key=sk-test-1234567890",
            "--set",
            "remote_rerank.model=reranker-x",
            "--show",
        ],
    )

    assert result.exit_code == 0, result.stdout
    assert "Configuration saved." in result.stdout
    assert "sk-t...7890" in result.stdout
    assert "sk-test-1234567890" not in result.stdout
    config = load_config()
    assert config.provider == "openai"
    assert config.remote_rerank is not None
    assert config.remote_rerank.model == "reranker-x"


@pytest.mark.parametrize("assignment", ["provider", "provider=unknown", "upload_batch_size=lots"])
def test_config_rejects_bad_assignments(runner, data_home, assignment):
    result = runner.invoke(app, ["config", "--set", assignment])

    assert result.exit_code == 1


def test_log_level_validation(runner):
    result = runner.invoke(app, ["--log-level", "chatty", "status"])

    assert result.exit_code != 0


def test_module_entrypoint_runs_cli(monkeypatch):
    import codex_context.__main__ as entry

    calls = []
    monkeypatch.setattr(entry, "run", lambda: calls.append(True))

    entry.main()

    assert calls == [True]
