"""Embedding helpers backed by pluggable embedding backends."""

from __future__ import annotations

from typing import Protocol, Sequence

import numpy as np

from .config import (
    DEFAULT_EMBED_CHAR_LIMIT,
    DEFAULT_EMBED_DIMENSIONS,
    DEFAULT_OPENAI_CHAR_LIMIT,
    SUPPORTED_PROVIDERS,
    Config,
    resolve_api_key,
    resolve_base_url,
    resolve_default_model,
)
from .providers.openai import OpenAIEmbeddingBackend
from .text import Messages


class EmbeddingBackend(Protocol):
    """Minimal protocol for components that can embed text batches."""

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Return embeddings for *texts* as a 2D numpy array."""
        raise NotImplementedError  # pragma: no cover


class Embedder:
    """Deduplicate texts, call the backend and L2-normalise the vectors."""

    def __init__(self, backend: EmbeddingBackend, *, description: str = "custom backend") -> None:
        self._backend = backend
        self.description = description

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        unique_texts, inverse = _dedupe_texts(texts)
        embeddings = np.asarray(self._backend.embed(unique_texts), dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[0] != len(unique_texts):
            raise RuntimeError(
                Messages.ERROR_EMBEDDING_COUNT.format(
                    actual=embeddings.shape[0] if embeddings.ndim else 0,
                    expected=len(unique_texts),
                )
            )
        if len(unique_texts) != len(texts):
            embeddings = embeddings[inverse]
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return embeddings / norms

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]


def create_embedder(config: Config) -> Embedder:
    """Build an :class:`Embedder` for the configured provider."""

    provider = (config.provider or "").lower()
    if provider not in SUPPORTED_PROVIDERS:
        allowed = ", ".join(SUPPORTED_PROVIDERS)
        raise RuntimeError(Messages.ERROR_PROVIDER_INVALID.format(value=provider, allowed=allowed))
    model = resolve_default_model(provider, config.model)
    base_url = resolve_base_url(provider, config.base_url)
    if provider == "custom" and not base_url:
        raise RuntimeError(Messages.ERROR_CUSTOM_BASE_URL_REQUIRED)
    backend = OpenAIEmbeddingBackend(
        model_name=model,
        api_key=resolve_api_key(config.api_key, provider),
        chunk_size=config.embed_batch_size,
        concurrency=config.embed_concurrency,
        base_url=base_url,
        char_limit=DEFAULT_EMBED_CHAR_LIMIT if provider == "jina" else DEFAULT_OPENAI_CHAR_LIMIT,
        dimensions=DEFAULT_EMBED_DIMENSIONS if provider == "jina" else None,
    )
    return Embedder(backend, description=f"{model} via {provider}")


def _dedupe_texts(texts: Sequence[str]) -> tuple[list[str], list[int]]:
    unique_texts: list[str] = []
    index_map: dict[str, int] = {}
    inverse: list[int] = []
    for text in texts:
        position = index_map.get(text)
        if position is None:
            position = len(unique_texts)
            unique_texts.append(text)
            index_map[text] = position
        inverse.append(position)
    return unique_texts, inverse
