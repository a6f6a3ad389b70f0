"""Public Python API for codex-context."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Sequence

from .config import (
    DEFAULT_SEARCH_LIMIT,
    Config,
    config_from_mapping,
    data_dir_context,
    load_config,
    set_data_dir,
)
from .embedding import Embedder
from .services.index_service import (
    IndexRequest,
    IndexResult,
    IndexStatusReport,
    clear_index as _clear_index,
    index_codebase,
    index_status,
)
from .services.search_service import (
    DEFAULT_STRATEGY,
    SUPPORTED_STRATEGIES,
    SearchRequest,
    SearchResponse,
    perform_search,
)
from .stores.base import VectorStore
from .text import Messages
from .utils import ensure_positive, normalize_extensions

__all__ = [
    "CodexContextError",
    "clear_index",
    "index",
    "search",
    "set_data_dir",
    "status",
]


class CodexContextError(ValueError):
    """Raised when the public API input is invalid."""


def index(
    path: Path | str = Path.cwd(),
    *,
    force: bool = False,
    include_hidden: bool = False,
    respect_gitignore: bool = True,
    extensions: Sequence[str] | str | None = None,
    config: Config | Mapping[str, object] | None = None,
    embedder: Embedder | None = None,
    store: VectorStore | None = None,
    data_dir: Path | str | None = None,
) -> IndexResult:
    """Index *path* incrementally (or from scratch with ``force``)."""
    with data_dir_context(data_dir):
        request = IndexRequest(
            directory=Path(path),
            force=force,
            include_hidden=include_hidden,
            respect_gitignore=respect_gitignore,
            extensions=_normalize_extensions(extensions),
        )
        return index_codebase(
            request,
            config=_resolve_config(config),
            embedder=embedder,
            store=store,
        )


def search(
    query: str,
    *,
    path: Path | str = Path.cwd(),
    limit: int = DEFAULT_SEARCH_LIMIT,
    strategy: str = DEFAULT_STRATEGY,
    min_score: float | None = None,
    file_types: Sequence[str] | str | None = None,
    symbol_types: Sequence[str] | str | None = None,
    expand_dependencies: bool = True,
    rerank: bool = True,
    context_lines: int = 0,
    config: Config | Mapping[str, object] | None = None,
    embedder: Embedder | None = None,
    store: VectorStore | None = None,
    data_dir: Path | str | None = None,
) -> SearchResponse:
    """Search an indexed codebase and return a structured response."""
    try:
        ensure_positive(limit, "limit")
    except ValueError as exc:
        raise CodexContextError(str(exc)) from exc
    if context_lines < 0:
        raise CodexContextError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field="context_lines"))
    normalized = (strategy or "").strip().lower()
    if normalized not in SUPPORTED_STRATEGIES:
        raise CodexContextError(
            Messages.ERROR_STRATEGY_INVALID.format(
                value=strategy, allowed=", ".join(SUPPORTED_STRATEGIES)
            )
        )
    with data_dir_context(data_dir):
        request = SearchRequest(
            query=query,
            directory=Path(path),
            limit=limit,
            min_score=min_score,
            strategy=normalized,
            file_types=_normalize_extensions(file_types),
            symbol_types=_coerce_iterable(symbol_types),
            expand_dependencies=expand_dependencies,
            rerank=rerank,
            context_lines=context_lines,
        )
        return perform_search(
            request,
            config=_resolve_config(config),
            embedder=embedder,
            store=store,
        )


def clear_index(
    path: Path | str = Path.cwd(),
    *,
    config: Config | Mapping[str, object] | None = None,
    store: VectorStore | None = None,
    data_dir: Path | str | None = None,
) -> bool:
    """Remove every trace of the index of *path*; return True if anything was removed."""
    with data_dir_context(data_dir):
        return _clear_index(path, config=_resolve_config(config), store=store)


def status(
    path: Path | str | None = None,
    *,
    data_dir: Path | str | None = None,
) -> list[IndexStatusReport]:
    with data_dir_context(data_dir):
        return index_status(path)


def _resolve_config(config: Config | Mapping[str, object] | None) -> Config:
    if config is None:
        return load_config()
    if isinstance(config, Config):
        return config
    try:
        return config_from_mapping(config, base=load_config())
    except ValueError as exc:
        raise CodexContextError(str(exc)) from exc


def _normalize_extensions(values: Sequence[str] | str | None) -> tuple[str, ...]:
    return normalize_extensions(_coerce_iterable(values))


def _coerce_iterable(values: Sequence[str] | str | None) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(values)
