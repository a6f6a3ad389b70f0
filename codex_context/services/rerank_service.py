"""Second-stage rerankers applied to search matches."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol, Sequence
from urllib import error as urlerror
from urllib import request as urlrequest

from ..config import (
    Config,
    DEFAULT_FLASHRANK_MAX_LENGTH,
    DEFAULT_FLASHRANK_MODEL,
    DEFAULT_RERANK_TIMEOUT,
    RemoteRerankConfig,
    data_dir,
    resolve_remote_rerank,
)
from ..lexical import bm25_scores, bm25_tokenize, normalize_by_max
from ..models import SearchMatch
from ..text import Messages

logger = logging.getLogger(__name__)

_BM25_SEMANTIC_WEIGHT = 0.7


class Reranker(Protocol):
    name: str

    def rerank(self, query: str, matches: Sequence[SearchMatch]) -> list[SearchMatch]: ...


def build_rerank_document(match: SearchMatch) -> str:
    chunk = match.chunk
    parts = [f"File: {chunk.relative_path or chunk.file_path}"]
    parts.append(f"Lines: {chunk.start_line}-{chunk.end_line}")
    names = chunk.symbol_names()
    if names:
        parts.append(f"Symbols: {', '.join(names)}")
    if chunk.content:
        parts.append(chunk.content)
    return "\n".join(parts)


def _apply_scores(
    matches: Sequence[SearchMatch], scored: Sequence[tuple[int, float | None]]
) -> list[SearchMatch]:
    """Reorder *matches* by the (index, score) pairs; unscored matches keep their place at the end."""

    ordered: list[SearchMatch] = []
    seen: set[int] = set()
    for idx, score in scored:
        if idx < 0 or idx >= len(matches) or idx in seen:
            continue
        match = matches[idx]
        if score is not None:
            if match.original_score is None:
                match.original_score = match.score
            match.rerank_score = float(score)
            match.score = float(score)
        ordered.append(match)
        seen.add(idx)
    for idx, match in enumerate(matches):
        if idx not in seen:
            ordered.append(match)
    return ordered


@dataclass(slots=True)
class BM25Reranker:
    name: str = "bm25"

    def rerank(self, query: str, matches: Sequence[SearchMatch]) -> list[SearchMatch]:
        if not matches:
            return []
        query_tokens = bm25_tokenize(query)
        if not query_tokens:
            return list(matches)
        documents = [bm25_tokenize(build_rerank_document(match)) for match in matches]
        lexical = normalize_by_max(bm25_scores(query_tokens, documents))
        semantic = normalize_by_max([max(match.score, 0.0) for match in matches])
        fused = [
            _BM25_SEMANTIC_WEIGHT * sem + (1.0 - _BM25_SEMANTIC_WEIGHT) * lex
            for sem, lex in zip(semantic, lexical)
        ]
        order = sorted(range(len(matches)), key=lambda idx: (-fused[idx], idx))
        return _apply_scores(matches, [(idx, fused[idx]) for idx in order])


@lru_cache(maxsize=4)
def _get_flashranker(model_name: str, max_length: int):
    from flashrank import Ranker

    cache_dir = data_dir() / "flashrank"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return Ranker(model_name=model_name, max_length=max_length, cache_dir=str(cache_dir))


@dataclass(slots=True)
class FlashRankReranker:
    model_name: str = DEFAULT_FLASHRANK_MODEL
    max_length: int = DEFAULT_FLASHRANK_MAX_LENGTH
    name: str = "flashrank"

    def rerank(self, query: str, matches: Sequence[SearchMatch]) -> list[SearchMatch]:
        if not matches:
            return []
        try:
            from flashrank import RerankRequest

            ranker = _get_flashranker(self.model_name, self.max_length)
        except ImportError as exc:
            raise RuntimeError(Messages.ERROR_FLASHRANK_MISSING) from exc
        passages = [
            {"id": idx, "text": build_rerank_document(match)}
            for idx, match in enumerate(matches)
        ]
        reranked = ranker.rerank(RerankRequest(query=query, passages=passages))
        scored: list[tuple[int, float | None]] = []
        for item in reranked:
            idx = item.get("id")
            if idx is None:
                continue
            score = item.get("score")
            scored.append((int(idx), float(score) if score is not None else None))
        return _apply_scores(matches, scored)


@dataclass(slots=True)
class RemoteReranker:
    """Jina-compatible ``/rerank`` endpoint client."""

    config: RemoteRerankConfig
    timeout: float = DEFAULT_RERANK_TIMEOUT
    name: str = "remote"

    def rerank(self, query: str, matches: Sequence[SearchMatch]) -> list[SearchMatch]:
        if not matches:
            return []
        if not (self.config.base_url and self.config.api_key and self.config.model):
            raise RuntimeError(Messages.ERROR_REMOTE_RERANK_INCOMPLETE)
        documents = [build_rerank_document(match) for match in matches]
        payload = self._request(query, documents)
        items = extract_rerank_items(payload)
        if not items:
            return list(matches)
        return _apply_scores(matches, items)

    def _request(self, query: str, documents: Sequence[str]) -> dict:
        body = {
            "model": self.config.model,
            "query": query,
            "documents": list(documents),
            "top_n": len(documents),
        }
        request = urlrequest.Request(
            str(self.config.base_url),
            data=json.dumps(body).encode("utf-8"),
            method="POST",
        )
        request.add_header("Content-Type", "application/json")
        request.add_header("Authorization", f"Bearer {self.config.api_key}")
        try:
            with urlrequest.urlopen(request, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8", errors="replace")
        except urlerror.HTTPError as exc:
            reason = f"HTTP {exc.code}"
            detail = exc.read().decode("utf-8", errors="replace").strip()
            if detail:
                reason = f"{reason}: {detail[:200]}"
            raise RuntimeError(Messages.ERROR_REMOTE_RERANK_FAILED.format(reason=reason)) from exc
        except (urlerror.URLError, TimeoutError) as exc:
            raise RuntimeError(
                Messages.ERROR_REMOTE_RERANK_FAILED.format(reason=str(exc))
            ) from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RuntimeError(
                Messages.ERROR_REMOTE_RERANK_FAILED.format(reason="Invalid JSON response")
            ) from exc


def extract_rerank_items(payload: object) -> list[tuple[int, float | None]]:
    if not isinstance(payload, dict):
        return []
    items = payload.get("results")
    if not isinstance(items, list):
        items = payload.get("data")
    if not isinstance(items, list):
        return []
    parsed: list[tuple[int, float | None]] = []
    for item in items:
        if not isinstance(item, dict) or item.get("index") is None:
            continue
        try:
            idx = int(item["index"])
        except (TypeError, ValueError):
            continue
        score = item.get("relevance_score")
        if score is None:
            score = item.get("score")
        try:
            parsed_score = float(score) if score is not None else None
        except (TypeError, ValueError):
            parsed_score = None
        parsed.append((idx, parsed_score))
    return parsed


def create_reranker(config: Config, mode: str | None = None) -> Reranker | None:
    """Return the reranker selected by *mode* (or the config), or None when reranking is off."""

    selected = (mode or config.rerank or "off").strip().lower()
    if selected == "off":
        return None
    if selected == "bm25":
        return BM25Reranker()
    if selected == "flashrank":
        return FlashRankReranker(model_name=config.flashrank_model or DEFAULT_FLASHRANK_MODEL)
    if selected == "remote":
        return RemoteReranker(config=resolve_remote_rerank(config.remote_rerank))
    logger.warning("Unknown rerank mode %r; reranking disabled", selected)
    return None
