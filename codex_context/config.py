"""Global configuration management for codex-context."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from contextlib import contextmanager
from contextvars import ContextVar
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlparse, urlunparse

from .text import Messages

DEFAULT_DATA_DIR = Path(os.path.expanduser("~")) / ".codex-context"
DATA_DIR = DEFAULT_DATA_DIR
DATA_DIR_ENV = "CODEX_CONTEXT_DATA_DIR"
CONFIG_FILENAME = "config.json"
_DATA_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "codex_context_data_dir_override",
    default=None,
)

DEFAULT_PROVIDER = "jina"
DEFAULT_JINA_MODEL = "jina-embeddings-v3"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
JINA_BASE_URL = "https://api.jina.ai/v1"
SUPPORTED_PROVIDERS: tuple[str, ...] = (DEFAULT_PROVIDER, "openai", "custom")
DEFAULT_EMBED_BATCH_SIZE = 32
DEFAULT_EMBED_CONCURRENCY = 2
DEFAULT_EMBED_TIMEOUT = 30.0
DEFAULT_EMBED_CHAR_LIMIT = 20_000
DEFAULT_OPENAI_CHAR_LIMIT = 8_000
DEFAULT_EMBED_DIMENSIONS = 1024
DEFAULT_EXTRACT_CONCURRENCY = max(1, min(4, os.cpu_count() or 1))

DEFAULT_STORE = "local"
SUPPORTED_STORES: tuple[str, ...] = (DEFAULT_STORE, "turbopuffer")
DEFAULT_TURBOPUFFER_URL = "https://gcp-us-central1.turbopuffer.com/v2"
DEFAULT_STORE_TIMEOUT = 30.0

DEFAULT_RERANK = "off"
SUPPORTED_RERANKERS: tuple[str, ...] = ("off", "bm25", "flashrank", "remote")
DEFAULT_REMOTE_RERANK_URL = "https://api.jina.ai/v1/rerank"
DEFAULT_REMOTE_RERANK_MODEL = "jina-reranker-v2-base-multilingual"
DEFAULT_RERANK_TIMEOUT = 15.0
DEFAULT_FLASHRANK_MODEL = "ms-marco-TinyBERT-L-2-v2"
DEFAULT_FLASHRANK_MAX_LENGTH = 256

DEFAULT_UPLOAD_BATCH_SIZE = 20
DEFAULT_UPLOAD_DELAY = 0.5
DEFAULT_HASH_CHECK_HOURS = 24.0
DEFAULT_LOCK_STALE_MINUTES = 30.0
DEFAULT_VECTOR_WEIGHT = 0.6
DEFAULT_BM25_WEIGHT = 0.4
DEFAULT_RRF_K = 10
DEFAULT_RRF_SCALE = 100.0
DEFAULT_OVERLAP_THRESHOLD = 0.7
DEFAULT_SEARCH_LIMIT = 8

ENV_API_KEY = "CODEX_CONTEXT_API_KEY"
JINA_ENV = "JINA_API_KEY"
OPENAI_ENV = "OPENAI_API_KEY"
TURBOPUFFER_ENV = "TURBOPUFFER_API_KEY"
REMOTE_RERANK_ENV = "CODEX_CONTEXT_RERANK_API_KEY"


@dataclass
class RemoteRerankConfig:
    base_url: str | None = None
    api_key: str | None = None
    model: str | None = None


@dataclass
class Config:
    api_key: str | None = None
    provider: str = DEFAULT_PROVIDER
    model: str | None = None
    base_url: str | None = None
    embed_batch_size: int = DEFAULT_EMBED_BATCH_SIZE
    embed_concurrency: int = DEFAULT_EMBED_CONCURRENCY
    extract_concurrency: int = DEFAULT_EXTRACT_CONCURRENCY
    store: str = DEFAULT_STORE
    turbopuffer_api_key: str | None = None
    turbopuffer_base_url: str | None = None
    rerank: str = DEFAULT_RERANK
    flashrank_model: str | None = None
    remote_rerank: RemoteRerankConfig | None = None
    upload_batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE
    upload_delay: float = DEFAULT_UPLOAD_DELAY
    hash_check_hours: float = DEFAULT_HASH_CHECK_HOURS
    lock_stale_minutes: float = DEFAULT_LOCK_STALE_MINUTES
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    bm25_weight: float = DEFAULT_BM25_WEIGHT
    rrf_k: int = DEFAULT_RRF_K
    rrf_scale: float = DEFAULT_RRF_SCALE
    overlap_threshold: float = DEFAULT_OVERLAP_THRESHOLD


_INT_FIELDS = {
    "embed_batch_size",
    "embed_concurrency",
    "extract_concurrency",
    "upload_batch_size",
    "rrf_k",
}
_FLOAT_FIELDS = {
    "upload_delay",
    "hash_check_hours",
    "lock_stale_minutes",
    "vector_weight",
    "bm25_weight",
    "rrf_scale",
    "overlap_threshold",
}
_OPTIONAL_STR_FIELDS = {
    "api_key",
    "model",
    "base_url",
    "turbopuffer_api_key",
    "turbopuffer_base_url",
    "flashrank_model",
}


def _resolve_data_dir() -> Path:
    override = _DATA_DIR_OVERRIDE.get()
    if override is not None:
        return override
    env_dir = (os.getenv(DATA_DIR_ENV) or "").strip()
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return DATA_DIR


def data_dir(*, create: bool = True) -> Path:
    """Return the directory holding config, snapshots, locks and the local store."""

    path = _resolve_data_dir()
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def config_file() -> Path:
    return _resolve_data_dir() / CONFIG_FILENAME


@contextmanager
def data_dir_context(path: Path | str | None):
    """Temporarily override the data directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _DATA_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _DATA_DIR_OVERRIDE.reset(token)


def set_data_dir(path: Path | str | None) -> None:
    global DATA_DIR
    if path is None:
        DATA_DIR = DEFAULT_DATA_DIR
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    DATA_DIR = dir_path


def load_config() -> Config:
    path = config_file()
    if not path.exists():
        return Config()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID) from exc
    if not isinstance(raw, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID)
    config = Config()
    _apply_config_payload(config, raw)
    return config


def save_config(config: Config) -> None:
    path = config_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    data: Dict[str, Any] = {}
    for item in fields(Config):
        value = getattr(config, item.name)
        if item.name == "remote_rerank":
            if value is None:
                continue
            remote_data = {
                key: getattr(value, key)
                for key in ("base_url", "api_key", "model")
                if getattr(value, key)
            }
            if remote_data:
                data["remote_rerank"] = remote_data
            continue
        if value is None:
            continue
        data[item.name] = value
    path.write_text(
        json.dumps(data, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def update_config(**changes: object) -> Config:
    """Apply validated changes to the stored config and persist it."""

    config = load_config()
    _apply_config_payload(config, changes)
    save_config(config)
    return config


def config_from_mapping(
    payload: Mapping[str, object], *, base: Config | None = None
) -> Config:
    """Return a Config built from *payload* without saving it."""
    config = Config() if base is None else replace(base)
    _apply_config_payload(config, payload)
    return config


def resolve_default_model(provider: str | None, model: str | None) -> str:
    """Return the effective embedding model for the selected provider."""
    clean_model = (model or "").strip()
    if clean_model:
        return clean_model
    normalized = (provider or DEFAULT_PROVIDER).lower()
    if normalized == "jina":
        return DEFAULT_JINA_MODEL
    return DEFAULT_OPENAI_MODEL


def resolve_base_url(provider: str | None, base_url: str | None) -> str | None:
    clean = (base_url or "").strip()
    if clean:
        return clean.rstrip("/")
    if (provider or DEFAULT_PROVIDER).lower() == "jina":
        return JINA_BASE_URL
    return None


def resolve_api_key(configured: str | None, provider: str) -> str | None:
    """Return the first available API key from config or environment."""

    if configured:
        return configured
    general = os.getenv(ENV_API_KEY)
    if general:
        return general
    normalized = (provider or DEFAULT_PROVIDER).lower()
    if normalized == "jina":
        return os.getenv(JINA_ENV) or None
    return os.getenv(OPENAI_ENV) or None


def resolve_turbopuffer_api_key(configured: str | None) -> str | None:
    if configured:
        return configured
    return os.getenv(TURBOPUFFER_ENV) or None


def normalize_remote_rerank_url(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    parsed = urlparse(cleaned)
    if not parsed.scheme or not parsed.netloc:
        base = cleaned.rstrip("/")
        if base.endswith("/rerank"):
            return base
        return f"{base}/rerank"
    trimmed = (parsed.path or "").rstrip("/")
    new_path = trimmed if trimmed.endswith("/rerank") else f"{trimmed}/rerank"
    return urlunparse(parsed._replace(path=new_path))


def resolve_remote_rerank(config: RemoteRerankConfig | None) -> RemoteRerankConfig:
    """Fill in Jina defaults and environment keys for the remote reranker."""

    base = config or RemoteRerankConfig()
    api_key = (
        base.api_key
        or os.getenv(REMOTE_RERANK_ENV)
        or os.getenv(JINA_ENV)
        or None
    )
    return RemoteRerankConfig(
        base_url=normalize_remote_rerank_url(base.base_url) or DEFAULT_REMOTE_RERANK_URL,
        api_key=api_key,
        model=base.model or DEFAULT_REMOTE_RERANK_MODEL,
    )


def _apply_config_payload(config: Config, payload: Mapping[str, object]) -> None:
    known = {item.name for item in fields(Config)}
    for key, value in payload.items():
        if key not in known:
            raise ValueError(Messages.ERROR_CONFIG_UNKNOWN_KEY.format(key=key))
        if key in _INT_FIELDS:
            setattr(config, key, _coerce_int(value, key))
        elif key in _FLOAT_FIELDS:
            setattr(config, key, _coerce_float(value, key))
        elif key in _OPTIONAL_STR_FIELDS:
            setattr(config, key, _coerce_optional_str(value, key))
        elif key == "provider":
            config.provider = _coerce_choice(value, key, SUPPORTED_PROVIDERS)
        elif key == "store":
            config.store = _coerce_choice(value, key, SUPPORTED_STORES)
        elif key == "rerank":
            config.rerank = _coerce_choice(value, key, SUPPORTED_RERANKERS)
        elif key == "remote_rerank":
            config.remote_rerank = _coerce_remote_rerank(value)


def _coerce_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    return value.strip() or None


def _coerce_int(value: object, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    try:
        result = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field)) from exc
    if result < 0:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    return result


def _coerce_float(value: object, field: str) -> float:
    if isinstance(value, bool):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field)) from exc
    if result < 0:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    return result


def _coerce_choice(value: object, field: str, allowed: tuple[str, ...]) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in allowed:
        raise ValueError(
            Messages.ERROR_CONFIG_CHOICE_INVALID.format(
                field=field,
                value=value,
                allowed=", ".join(allowed),
            )
        )
    return normalized


def _coerce_remote_rerank(value: object) -> RemoteRerankConfig | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field="remote_rerank"))
    base_url = normalize_remote_rerank_url(_coerce_optional_str(value.get("base_url"), "base_url"))
    api_key = _coerce_optional_str(value.get("api_key"), "api_key")
    model = _coerce_optional_str(value.get("model"), "model")
    if not any((base_url, api_key, model)):
        return None
    return RemoteRerankConfig(base_url=base_url, api_key=api_key, model=model)
