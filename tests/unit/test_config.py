import json

import pytest

from codex_context import config as config_module


def test_load_config_defaults(data_home):
    cfg = config_module.load_config()

    assert cfg.provider == config_module.DEFAULT_PROVIDER
    assert cfg.store == "local"
    assert cfg.rerank == "off"
    assert cfg.upload_batch_size == 20
    assert cfg.upload_delay == config_module.DEFAULT_UPLOAD_DELAY
    assert cfg.vector_weight == pytest.approx(0.6)
    assert cfg.bm25_weight == pytest.approx(0.4)
    assert cfg.remote_rerank is None


def test_update_config_persists_and_coerces(data_home):
    config_module.update_config(provider="OpenAI", upload_batch_size="5", upload_delay="0.25")

    stored = json.loads((data_home / "config.json").read_text())
    assert stored["provider"] == "openai"
    assert stored["upload_batch_size"] == 5
    cfg = config_module.load_config()
    assert cfg.upload_delay == pytest.approx(0.25)


@pytest.mark.parametrize(
    "changes",
    [
        {"provider": "gemini"},
        {"store": "pinecone"},
        {"rerank": "magic"},
        {"upload_batch_size": "many"},
        {"hash_check_hours": -1},
        {"unknown_key": 1},
    ],
)
def test_update_config_rejects_invalid_values(data_home, changes):
    with pytest.raises(ValueError):
        config_module.update_config(**changes)


def test_load_config_rejects_non_object(data_home):
    data_home.mkdir(parents=True)
    (data_home / "config.json").write_text("[1, 2]")

    with pytest.raises(ValueError):
        config_module.load_config()


def test_remote_rerank_round_trip(data_home):
    config_module.update_config(
        remote_rerank={"base_url": "https://rerank.example.com/v1", "model": "tiny"}
    )

    cfg = config_module.load_config()
    assert cfg.remote_rerank is not None
    assert cfg.remote_rerank.base_url == "https://rerank.example.com/v1/rerank"
    assert cfg.remote_rerank.model == "tiny"


def test_resolve_remote_rerank_fills_defaults(monkeypatch):
    monkeypatch.delenv(config_module.REMOTE_RERANK_ENV, raising=False)
    monkeypatch.setenv(config_module.JINA_ENV, "jina-token")

    resolved = config_module.resolve_remote_rerank(None)

    assert resolved.base_url == config_module.DEFAULT_REMOTE_RERANK_URL
    assert resolved.model == config_module.DEFAULT_REMOTE_RERANK_MODEL
    assert resolved.api_key == "jina-token"


def test_resolve_api_key_prefers_config_then_env(monkeypatch):
    monkeypatch.delenv(config_module.ENV_API_KEY, raising=False)
    monkeypatch.setenv(config_module.OPENAI_ENV, "openai-token")
    monkeypatch.setenv(config_module.JINA_ENV, "jina-token")

    assert config_module.resolve_api_key("explicit", "jina") == "explicit"
    assert config_module.resolve_api_key(None, "jina") == "jina-token"
    assert config_module.resolve_api_key(None, "openai") == "openai-token"

    monkeypatch.setenv(config_module.ENV_API_KEY, "general")
    assert config_module.resolve_api_key(None, "openai") == "general"


def test_resolve_default_model_per_provider():
    assert config_module.resolve_default_model("jina", None) == config_module.DEFAULT_JINA_MODEL
    assert config_module.resolve_default_model("openai", "") == config_module.DEFAULT_OPENAI_MODEL
    assert config_module.resolve_default_model("custom", "my-model") == "my-model"


def test_data_dir_context_overrides_env(tmp_path, data_home):
    override = tmp_path / "override"
    with config_module.data_dir_context(override):
        assert config_module.data_dir() == override.resolve()
        assert config_module.config_file() == override.resolve() / "config.json"
    assert config_module.data_dir() == data_home.resolve()


def test_config_from_mapping_does_not_save(data_home):
    cfg = config_module.config_from_mapping({"rerank": "bm25"})

    assert cfg.rerank == "bm25"
    assert not (data_home / "config.json").exists()
