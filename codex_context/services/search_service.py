"""Logic helpers for the `codex-context search` command."""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Sequence

from ..config import (
    DEFAULT_SEARCH_LIMIT,
    Config,
    data_dir,
    load_config,
)
from ..embedding import Embedder, create_embedder
from ..models import FileFingerprint, IndexSnapshot, SearchMatch, StoreRow
from ..stores.base import QueryFilters, VectorStore, create_store
from ..text import Messages
from ..utils import normalize_extensions, resolve_directory
from .fusion_service import fuse_hybrid_results
from .incremental_service import SnapshotStore
from .registry_service import CodebaseRegistry, open_registry
from .rerank_service import Reranker, create_reranker

logger = logging.getLogger(__name__)

SUPPORTED_STRATEGIES: tuple[str, ...] = ("semantic", "hybrid", "structural")
DEFAULT_STRATEGY = "hybrid"
SEMANTIC_MIN_SCORE = 0.3
MAX_CANDIDATES = 50
HYBRID_SEMANTIC_WEIGHT = 0.7
HYBRID_SYMBOL_WEIGHT = 0.3
SYMBOL_SEARCH_CAP = 20
DEPENDENCY_BOOST = 1.1
DEPENDENCY_SCORE_CAP = 0.95
RELATED_SYMBOL_COUNT = 5

_SYMBOL_RE = re.compile(
    r"\b[A-Z][a-zA-Z0-9]*|[a-z][a-zA-Z0-9]*(?=[A-Z])|[a-zA-Z_][a-zA-Z0-9_]*(?=\()"
)
_SEARCH_ERRORS = (RuntimeError, OSError, sqlite3.Error)


class CodebaseNotIndexedError(LookupError):
    """Raised when a search targets a codebase with no index."""

    def __init__(self, path: Path | str) -> None:
        super().__init__(Messages.ERROR_CODEBASE_NOT_INDEXED.format(path=path))
        self.path = str(path)


@dataclass(slots=True)
class SearchRequest:
    query: str
    directory: Path
    limit: int = DEFAULT_SEARCH_LIMIT
    min_score: float | None = None
    strategy: str = DEFAULT_STRATEGY
    file_types: tuple[str, ...] = ()
    symbol_types: tuple[str, ...] = ()
    chunk_types: tuple[str, ...] = ()
    expand_dependencies: bool = True
    rerank: bool = True
    context_lines: int = 0


@dataclass(slots=True)
class QueryAnalysis:
    intent: str
    extracted_symbols: list[str]
    suggested_symbol_types: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "extractedSymbols": list(self.extracted_symbols),
            "suggestedSymbolTypes": list(self.suggested_symbol_types),
        }


@dataclass(slots=True)
class SearchSuggestions:
    alternative_queries: list[str] = field(default_factory=list)
    related_symbols: list[str] = field(default_factory=list)
    similar_code_patterns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alternativeQueries": list(self.alternative_queries),
            "relatedSymbols": list(self.related_symbols),
            "similarCodePatterns": list(self.similar_code_patterns),
        }


class SearchError(str, Enum):
    EMPTY_QUERY = "empty_query"
    INVALID_STRATEGY = "invalid_strategy"
    DIRECTORY_NOT_FOUND = "directory_not_found"
    CODEBASE_NOT_INDEXED = "codebase_not_indexed"
    SEARCH_FAILED = "search_failed"


@dataclass(slots=True)
class SearchResponse:
    success: bool
    matches: list[SearchMatch] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    suggestions: SearchSuggestions | None = None
    message: str | None = None
    error: SearchError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "matches": [match.to_dict() for match in self.matches],
            "metadata": dict(self.metadata),
        }
        if self.suggestions is not None:
            data["suggestions"] = self.suggestions.to_dict()
        if self.message:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error.value
        return data


def analyze_query(query: str) -> QueryAnalysis:
    """Guess what the user is looking for; purely heuristic."""

    lowered = query.lower()
    if "function" in lowered or "method" in lowered:
        intent = "find_function"
    elif "class" in lowered or "type" in lowered:
        intent = "find_class"
    elif "usage" in lowered or "used" in lowered or "calls" in lowered:
        intent = "find_usage"
    elif "pattern" in lowered or "like" in lowered or "similar" in lowered:
        intent = "find_pattern"
    else:
        intent = "general"

    symbols = list(
        dict.fromkeys(token for token in _SYMBOL_RE.findall(query) if len(token) > 2)
    )
    if intent == "find_function":
        suggested = ["function", "method"]
    elif intent == "find_class":
        suggested = ["class", "interface", "type"]
    else:
        suggested = ["function", "class", "interface", "variable"]
    return QueryAnalysis(intent=intent, extracted_symbols=symbols, suggested_symbol_types=suggested)


def build_symbol_graph(snapshot: IndexSnapshot | None) -> dict[str, set[str]]:
    """Undirected edges from each defined symbol to the identifiers its file references."""

    graph: dict[str, set[str]] = {}
    if snapshot is None:
        return graph
    for fingerprint in snapshot.files.values():
        for symbol in fingerprint.symbols:
            for reference in fingerprint.references:
                if reference == symbol:
                    continue
                graph.setdefault(symbol, set()).add(reference)
                graph.setdefault(reference, set()).add(symbol)
    return graph


def related_symbols(current: Iterable[str], graph: dict[str, set[str]]) -> set[str]:
    current_set = set(current)
    related: set[str] = set()
    for symbol in current_set:
        related.update(graph.get(symbol, ()))
    return related - current_set


def perform_search(
    request: SearchRequest,
    *,
    config: Config | None = None,
    embedder: Embedder | None = None,
    store: VectorStore | None = None,
    reranker: Reranker | None = None,
    registry: CodebaseRegistry | None = None,
) -> SearchResponse:
    """Run a search and always return a structured response.

    Empty queries, un-indexed codebases and failures of external services are
    reported with ``success=False`` instead of raising.
    """

    query = (request.query or "").strip()
    if not query:
        return SearchResponse(
            success=False, message=Messages.ERROR_EMPTY_QUERY, error=SearchError.EMPTY_QUERY
        )
    strategy = (request.strategy or DEFAULT_STRATEGY).lower()
    if strategy not in SUPPORTED_STRATEGIES:
        return SearchResponse(
            success=False,
            message=Messages.ERROR_STRATEGY_INVALID.format(
                value=request.strategy, allowed=", ".join(SUPPORTED_STRATEGIES)
            ),
            error=SearchError.INVALID_STRATEGY,
        )
    try:
        return _SearchRun(
            request,
            query=query,
            strategy=strategy,
            config=config,
            embedder=embedder,
            store=store,
            reranker=reranker,
            registry=registry,
        ).execute()
    except CodebaseNotIndexedError as exc:
        logger.info("%s", exc)
        return SearchResponse(
            success=False, message=str(exc), error=SearchError.CODEBASE_NOT_INDEXED
        )
    except (FileNotFoundError, NotADirectoryError) as exc:
        return SearchResponse(
            success=False, message=str(exc), error=SearchError.DIRECTORY_NOT_FOUND
        )
    except _SEARCH_ERRORS as exc:
        logger.error("Search failed: %s", exc)
        return SearchResponse(
            success=False,
            message=Messages.ERROR_SEARCH_FAILED.format(reason=exc),
            error=SearchError.SEARCH_FAILED,
        )


class _SearchRun:
    def __init__(
        self,
        request: SearchRequest,
        *,
        query: str,
        strategy: str,
        config: Config | None,
        embedder: Embedder | None,
        store: VectorStore | None,
        reranker: Reranker | None,
        registry: CodebaseRegistry | None,
    ) -> None:
        self.request = request
        self.query = query
        self.strategy = strategy
        self.limit = max(1, int(request.limit or DEFAULT_SEARCH_LIMIT))
        self.directory = resolve_directory(request.directory)
        self.config = config or load_config()
        self.data_dir = data_dir()
        self.registry = registry or open_registry(self.data_dir)
        self.store = store or create_store(self.config, self.data_dir)
        self._embedder = embedder
        self._reranker = reranker
        self.namespace = self.registry.namespace_for(self.directory)
        self.filters = QueryFilters(
            file_types=normalize_extensions(request.file_types),
            chunk_types=tuple(request.chunk_types),
        )
        self._snapshot: IndexSnapshot | None = None
        self._snapshot_loaded = False

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = create_embedder(self.config)
        return self._embedder

    @property
    def snapshot(self) -> IndexSnapshot | None:
        if not self._snapshot_loaded:
            self._snapshot = SnapshotStore(self.data_dir).load(self.directory)
            self._snapshot_loaded = True
        return self._snapshot

    def execute(self) -> SearchResponse:
        started = time.perf_counter()
        if not self.registry.is_indexed(self.directory) and not self.store.namespace_exists(
            self.namespace
        ):
            raise CodebaseNotIndexedError(self.directory)

        analysis = analyze_query(self.query)
        logger.debug(
            "Search %r in %s (strategy=%s, intent=%s, symbols=%s)",
            self.query,
            self.namespace,
            self.strategy,
            analysis.intent,
            analysis.extracted_symbols,
        )
        if self.strategy == "semantic":
            matches = self._semantic()
        elif self.strategy == "hybrid":
            matches = self._hybrid(analysis)
        else:
            matches = self._structural(analysis)

        matches = self._apply_filters(matches)
        if self.request.expand_dependencies and matches:
            matches = self._expand_dependencies(matches)
        if self.request.context_lines > 0:
            attach_context(matches, self.request.context_lines)

        reranker = self._resolve_reranker()
        if reranker is not None and len(matches) > 1:
            try:
                matches = reranker.rerank(self.query, matches)
            except (RuntimeError, OSError, ValueError) as exc:
                logger.warning(Messages.WARNING_RERANK_FAILED.format(reason=exc))

        self._link_related(matches)
        matches = sorted(matches, key=lambda item: item.score, reverse=True)[: self.limit]
        elapsed = int((time.perf_counter() - started) * 1000)
        return SearchResponse(
            success=True,
            matches=matches,
            metadata={
                "totalMatches": len(matches),
                "searchTime": elapsed,
                "strategy": self.strategy,
                "namespace": self.namespace,
                "features": {
                    "semanticSearch": True,
                    "dependencyExpansion": self.request.expand_dependencies,
                    "reranking": reranker is not None,
                    "contextExpansion": self.request.context_lines > 0,
                },
                "reranker": reranker.name if reranker is not None else None,
                "queryAnalysis": analysis.to_dict(),
            },
            suggestions=build_suggestions(self.query, matches, analysis),
        )

    def _resolve_reranker(self) -> Reranker | None:
        if not self.request.rerank:
            return None
        if self._reranker is not None:
            return self._reranker
        return create_reranker(self.config)

    def _candidate_limit(self) -> int:
        return min(self.limit * 2, MAX_CANDIDATES)

    def _semantic(self) -> list[SearchMatch]:
        vector = self.embedder.embed_query(self.query)
        rows = self.store.query(
            self.namespace, vector=vector, limit=self._candidate_limit(), filters=self.filters
        )
        threshold = SEMANTIC_MIN_SCORE if self.request.min_score is None else self.request.min_score
        return _to_matches((row for row in rows if row.score >= threshold), "semantic")

    def _hybrid(self, analysis: QueryAnalysis) -> list[SearchMatch]:
        vector = self.embedder.embed_query(self.query)
        candidates = self._candidate_limit()
        rows = self.store.hybrid_query(
            self.namespace, vector=vector, text=self.query, limit=candidates, filters=self.filters
        )
        fused = fuse_hybrid_results(
            rows.vector_rows,
            rows.lexical_rows,
            candidates,
            vector_weight=self.config.vector_weight,
            bm25_weight=self.config.bm25_weight,
            k=self.config.rrf_k,
            scale=self.config.rrf_scale,
            overlap_threshold=self.config.overlap_threshold,
        )
        matches: list[SearchMatch] = []
        for item in fused:
            if item.row.chunk is None:
                continue
            match_type = "semantic" if item.vector_rank is not None else "lexical"
            matches.append(
                SearchMatch(
                    chunk=item.row.chunk,
                    score=item.score * HYBRID_SEMANTIC_WEIGHT,
                    match_type=match_type,
                )
            )
        if analysis.extracted_symbols:
            symbol_matches = self._symbol_search(
                analysis.extracted_symbols, min(self.limit, SYMBOL_SEARCH_CAP)
            )
            for match in symbol_matches:
                match.score *= HYBRID_SYMBOL_WEIGHT
            matches.extend(symbol_matches)
        return merge_matches(matches)

    def _structural(self, analysis: QueryAnalysis) -> list[SearchMatch]:
        matches: list[SearchMatch] = []
        if analysis.extracted_symbols:
            matches = self._symbol_search(analysis.extracted_symbols, self.limit)
        if not matches:
            logger.debug("No symbol matches for %r; falling back to semantic search", self.query)
            return self._semantic()
        return matches

    def _symbol_search(self, symbols: Sequence[str], limit: int) -> list[SearchMatch]:
        if limit <= 0 or not symbols:
            return []
        rows = self.store.query(
            self.namespace, symbols=list(symbols), limit=limit, filters=self.filters
        )
        return _to_matches(rows, "symbol")

    def _apply_filters(self, matches: list[SearchMatch]) -> list[SearchMatch]:
        filtered = matches
        if self.request.symbol_types:
            wanted = set(self.request.symbol_types)
            filtered = [
                match
                for match in filtered
                if any(symbol.kind in wanted for symbol in match.chunk.symbols)
            ]
        if self.request.min_score is not None:
            filtered = [match for match in filtered if match.score >= self.request.min_score]
        return filtered

    def _expand_dependencies(self, matches: list[SearchMatch]) -> list[SearchMatch]:
        try:
            graph = build_symbol_graph(self.snapshot)
            current = {name for match in matches for name in match.chunk.symbol_names()}
            related = related_symbols(current, graph)
            if not related:
                return matches
            logger.debug("Found %d related symbols", len(related))
            extra = self._symbol_search(sorted(related), self.limit - len(matches))
        except _SEARCH_ERRORS as exc:
            logger.warning("Dependency expansion failed: %s", exc)
            return matches
        expanded = list(matches)
        existing = {match.id for match in matches}
        for match in extra:
            if len(expanded) >= self.limit:
                break
            if match.id in existing:
                continue
            match.score = min(match.score * DEPENDENCY_BOOST, DEPENDENCY_SCORE_CAP)
            match.match_type = "dependency"
            expanded.append(match)
            existing.add(match.id)
        return expanded

    def _link_related(self, matches: Sequence[SearchMatch]) -> None:
        files: dict[str, FileFingerprint] = self.snapshot.files if self.snapshot else {}
        names = [set(match.chunk.symbol_names()) for match in matches]
        depends = [
            set(files[match.chunk.file_path].depends_on) if match.chunk.file_path in files else set()
            for match in matches
        ]
        neighbours = [
            depends[idx] | set(files[match.chunk.file_path].dependents)
            if match.chunk.file_path in files
            else set()
            for idx, match in enumerate(matches)
        ]
        for idx, match in enumerate(matches):
            match.related_matches = [
                other.id
                for jdx, other in enumerate(matches)
                if jdx != idx
                and (names[idx] & names[jdx] or depends[idx] & neighbours[jdx])
            ]


def _to_matches(rows: Iterable[StoreRow], match_type: str) -> list[SearchMatch]:
    return [
        SearchMatch(chunk=row.chunk, score=row.score, match_type=match_type)
        for row in rows
        if row.chunk is not None
    ]


def merge_matches(matches: Iterable[SearchMatch]) -> list[SearchMatch]:
    """Collapse matches sharing an id, keeping the first one with the highest score."""

    merged: dict[str, SearchMatch] = {}
    for match in matches:
        existing = merged.get(match.id)
        if existing is None:
            merged[match.id] = match
        else:
            existing.score = max(existing.score, match.score)
    return list(merged.values())


def attach_context(matches: Iterable[SearchMatch], lines: int) -> None:
    """Fill ``context_before`` / ``context_after`` with up to *lines* source lines."""

    cache: dict[str, list[str]] = {}
    for match in matches:
        path = match.chunk.file_path
        if path not in cache:
            try:
                cache[path] = Path(path).read_text(encoding="utf-8", errors="replace").split("\n")
            except OSError as exc:
                logger.warning("Could not add context for %s: %s", path, exc)
                cache[path] = []
        source = cache[path]
        if not source:
            continue
        start = match.chunk.start_line - 1
        end = match.chunk.end_line
        match.context_before = "\n".join(source[max(0, start - lines) : start])
        match.context_after = "\n".join(source[end : end + lines])


def build_suggestions(
    query: str, matches: Sequence[SearchMatch], analysis: QueryAnalysis
) -> SearchSuggestions:
    suggestions = SearchSuggestions()
    if not matches:
        suggestions.alternative_queries = [
            f'"{query}" implementation',
            f"{query} usage",
            f"{query} examples",
        ]
    elif analysis.extracted_symbols:
        symbol = analysis.extracted_symbols[0]
        suggestions.alternative_queries = [
            f"{symbol} definition",
            f"{symbol} usage examples",
            f"classes that use {symbol}",
        ]
    frequency: dict[str, int] = {}
    for match in matches:
        for symbol in match.chunk.symbols:
            frequency[symbol.name] = frequency.get(symbol.name, 0) + 1
    ranked = sorted(frequency.items(), key=lambda item: -item[1])
    suggestions.related_symbols = [name for name, _ in ranked[:RELATED_SYMBOL_COUNT]]
    return suggestions
