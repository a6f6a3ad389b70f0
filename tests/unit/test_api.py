import pytest

import codex_context
from codex_context import api
from codex_context.config import Config
from codex_context.services.index_service import IndexStatus
from codex_context.stores.local import LocalVectorStore


@pytest.fixture
def store(tmp_path):
    store = LocalVectorStore(tmp_path / "vectors.db")
    yield store
    store.close()


def test_package_exports_api():
    assert codex_context.index is api.index
    assert codex_context.search is api.search
    assert codex_context.get_version() == codex_context.__version__


@pytest.mark.parametrize(
    ("kwargs", "fragment"),
    [
        ({"limit": 0}, "limit"),
        ({"context_lines": -1}, "context_lines"),
        ({"strategy": "fuzzy"}, "Unsupported strategy"),
    ],
)
def test_search_validates_arguments(tmp_path, kwargs, fragment):
    with pytest.raises(api.CodexContextError, match=fragment):
        api.search("query", path=tmp_path, **kwargs)


def test_invalid_config_mapping_raises(tmp_path, codebase, monkeypatch):
    monkeypatch.setenv("CODEX_CONTEXT_DATA_DIR", str(tmp_path / "data"))

    with pytest.raises(api.CodexContextError):
        api.index(codebase, config={"upload_batch_size": "many"})


def test_index_search_status_clear_round_trip(tmp_path, codebase, embedder, store):
    data = tmp_path / "api-data"
    config = Config(upload_delay=0.0, extract_concurrency=1)

    result = api.index(codebase, config=config, embedder=embedder, store=store, data_dir=data)
    assert result.status is IndexStatus.STORED
    assert (data / f"{result.namespace}-incremental.json").is_file()

    response = api.search(
        "Calculator",
        path=codebase,
        strategy="Structural",
        file_types="ts",
        config=config,
        embedder=embedder,
        store=store,
        data_dir=data,
    )
    assert response.success
    assert all(match.chunk.relative_path.endswith(".ts") for match in response.matches)

    reports = api.status(codebase, data_dir=data)
    assert reports[0].entry is not None

    assert api.clear_index(codebase, config=config, store=store, data_dir=data) is True
    assert api.status(data_dir=data) == []
