"""OpenAI SDK embedding backend, also used for Jina and other compatible endpoints."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
import time
from typing import Iterator, Sequence

import numpy as np
from dotenv import load_dotenv
from openai import OpenAI

from ..config import DEFAULT_EMBED_CHAR_LIMIT, DEFAULT_EMBED_TIMEOUT
from ..text import Messages

logger = logging.getLogger(__name__)


class OpenAIEmbeddingBackend:
    """Embedding backend that calls an OpenAI-style ``/embeddings`` API."""

    def __init__(
        self,
        *,
        model_name: str,
        api_key: str | None,
        chunk_size: int | None = None,
        concurrency: int = 1,
        base_url: str | None = None,
        timeout: float = DEFAULT_EMBED_TIMEOUT,
        char_limit: int = DEFAULT_EMBED_CHAR_LIMIT,
        dimensions: int | None = None,
    ) -> None:
        load_dotenv()
        self.model_name = model_name
        self.chunk_size = chunk_size if chunk_size and chunk_size > 0 else None
        self.concurrency = max(int(concurrency or 1), 1)
        self.char_limit = char_limit
        self.dimensions = dimensions
        self.api_key = api_key
        if not self.api_key:
            raise RuntimeError(Messages.ERROR_API_KEY_MISSING)
        client_kwargs: dict[str, object] = {
            "api_key": self.api_key,
            "timeout": timeout,
            "max_retries": 0,
        }
        if base_url:
            client_kwargs["base_url"] = base_url.rstrip("/")
        self._client = OpenAI(**client_kwargs)

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        batches = list(_chunk([self._truncate(text) for text in texts], self.chunk_size))
        if self.concurrency > 1 and len(batches) > 1:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(batches))) as executor:
                results = list(executor.map(self._embed_batch, batches))
        else:
            results = [self._embed_batch(batch) for batch in batches]
        vectors = [vector for batch in results for vector in batch]
        if not vectors:
            raise RuntimeError(Messages.ERROR_NO_EMBEDDINGS)
        if len(vectors) != len(texts):
            raise RuntimeError(
                Messages.ERROR_EMBEDDING_COUNT.format(actual=len(vectors), expected=len(texts))
            )
        return np.vstack(vectors)

    def _truncate(self, text: str) -> str:
        if self.char_limit and len(text) > self.char_limit:
            return text[: self.char_limit]
        return text

    def _embed_batch(self, batch: Sequence[str]) -> list[np.ndarray]:
        request: dict[str, object] = {"model": self.model_name, "input": list(batch)}
        if self.dimensions:
            request["dimensions"] = self.dimensions
        attempt = 0
        while True:
            try:
                response = self._client.embeddings.create(**request)
                break
            except Exception as exc:  # pragma: no cover - API client variations
                if _should_retry_openai_error(exc) and attempt < _MAX_RETRIES:
                    delay = _backoff_delay(attempt)
                    logger.debug("Embedding request failed (%s); retrying in %.1fs", exc, delay)
                    _sleep(delay)
                    attempt += 1
                    continue
                raise RuntimeError(_format_openai_error(exc)) from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise RuntimeError(Messages.ERROR_NO_EMBEDDINGS)
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0))
        return [
            np.asarray(item.embedding, dtype=np.float32)
            for item in ordered
            if getattr(item, "embedding", None) is not None
        ]


def _chunk(items: Sequence[str], size: int | None) -> Iterator[Sequence[str]]:
    if size is None or size <= 0:
        yield items
        return
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 0.5
_RETRY_MAX_DELAY = 8.0


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _backoff_delay(attempt: int) -> float:
    return min(_RETRY_MAX_DELAY, _RETRY_BASE_DELAY * (2**attempt))


def _extract_status_code(exc: Exception) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _should_retry_openai_error(exc: Exception) -> bool:
    status = _extract_status_code(exc)
    if status in _RETRYABLE_STATUS_CODES:
        return True
    name = exc.__class__.__name__.lower()
    if "ratelimit" in name or "timeout" in name or "connection" in name:
        return True
    message = str(exc).lower()
    return any(
        token in message
        for token in ("rate limit", "timed out", "temporar", "overload", "too many requests")
    )


def _format_openai_error(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return f"{Messages.ERROR_OPENAI_PREFIX}{message}"
