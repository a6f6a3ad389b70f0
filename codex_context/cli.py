"""Command line interface for codex-context."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, fields
from enum import Enum
from pathlib import Path
from typing import Sequence

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config, config_file, load_config, update_config
from .models import SearchMatch
from .services.index_service import (
    IndexRequest,
    IndexStatus,
    clear_index,
    index_codebase,
    index_status,
)
from .services.search_service import DEFAULT_STRATEGY, SearchRequest, perform_search
from .text import Messages, Styles
from .utils import ensure_positive, format_path, normalize_extensions

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_SECRET_FIELDS = {"api_key", "turbopuffer_api_key"}

console = Console()

app = typer.Typer(
    help=Messages.APP_HELP,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


class OutputFormat(str, Enum):
    rich = "rich"
    json = "json"


class Strategy(str, Enum):
    semantic = "semantic"
    hybrid = "hybrid"
    structural = "structural"


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"codex-context v{__version__}")
        raise typer.Exit()


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


def _configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stderr, force=True)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help=Messages.HELP_LOG_LEVEL),
) -> None:
    """Global Typer callback for shared options."""
    _configure_logging(log_level)


@app.command()
def index(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_INDEX_PATH),
    force: bool = typer.Option(False, "--force", "-f", help=Messages.HELP_INDEX_FORCE),
    include_hidden: bool = typer.Option(
        False, "--include-hidden", help=Messages.HELP_INDEX_INCLUDE_HIDDEN
    ),
    no_respect_gitignore: bool = typer.Option(
        False, "--no-respect-gitignore", help=Messages.HELP_RESPECT_GITIGNORE
    ),
    extensions: list[str] | None = typer.Option(
        None, "--ext", "-e", help=Messages.HELP_EXTENSIONS
    ),
    output_format: OutputFormat = typer.Option(
        OutputFormat.rich, "--format", help=Messages.HELP_SEARCH_FORMAT
    ),
) -> None:
    """Index a codebase, re-processing only what changed since the last run."""
    request = IndexRequest(
        directory=path,
        force=force,
        include_hidden=include_hidden,
        respect_gitignore=not no_respect_gitignore,
        extensions=normalize_extensions(extensions),
    )
    if output_format == OutputFormat.rich:
        console.print(_styled(Messages.INFO_INDEX_RUNNING.format(path=path), Styles.INFO))
    try:
        result = index_codebase(request)
    except ValueError as exc:
        console.print(_styled(str(exc), Styles.ERROR))
        raise typer.Exit(code=1)

    if output_format == OutputFormat.json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        if not result.success:
            raise typer.Exit(code=1)
        return

    if result.status in (IndexStatus.LOCKED, IndexStatus.FAILED):
        console.print(_styled(result.message, Styles.ERROR))
        raise typer.Exit(code=1)
    if result.status in (IndexStatus.EMPTY, IndexStatus.UP_TO_DATE):
        console.print(_styled(result.message, Styles.WARNING))
        return
    style = Styles.SUCCESS if result.status == IndexStatus.STORED else Styles.WARNING
    console.print(_styled(result.message, style))
    for item in result.errors:
        console.print(_styled(f"  {format_path(item.file, path.resolve())}: {item.error}", Styles.WARNING))
    console.print(
        _styled(Messages.INFO_INDEX_TIME.format(ms=result.processing_time_ms), Styles.INFO)
    )
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help=Messages.HELP_QUERY),
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_SEARCH_PATH),
    limit: int = typer.Option(8, "--limit", "-k", help=Messages.HELP_SEARCH_LIMIT),
    strategy: Strategy = typer.Option(
        Strategy(DEFAULT_STRATEGY), "--strategy", "-s", help=Messages.HELP_SEARCH_STRATEGY
    ),
    min_score: float | None = typer.Option(
        None, "--min-score", help=Messages.HELP_SEARCH_MIN_SCORE
    ),
    extensions: list[str] | None = typer.Option(
        None, "--ext", "-e", help=Messages.HELP_EXTENSIONS
    ),
    context_lines: int = typer.Option(0, "--context", "-C", help=Messages.HELP_SEARCH_CONTEXT),
    no_rerank: bool = typer.Option(False, "--no-rerank", help=Messages.HELP_SEARCH_NO_RERANK),
    no_expand: bool = typer.Option(False, "--no-expand", help=Messages.HELP_SEARCH_NO_EXPAND),
    output_format: OutputFormat = typer.Option(
        OutputFormat.rich, "--format", help=Messages.HELP_SEARCH_FORMAT
    ),
) -> None:
    """Search an indexed codebase."""
    clean_query = query.strip()
    if not clean_query:
        console.print(_styled(Messages.ERROR_EMPTY_QUERY, Styles.ERROR))
        raise typer.Exit(code=1)
    try:
        ensure_positive(limit, "limit")
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    request = SearchRequest(
        query=clean_query,
        directory=path,
        limit=limit,
        min_score=min_score,
        strategy=strategy.value,
        file_types=normalize_extensions(extensions),
        expand_dependencies=not no_expand,
        rerank=not no_rerank,
        context_lines=max(context_lines, 0),
    )
    if output_format == OutputFormat.rich:
        console.print(_styled(Messages.INFO_SEARCH_RUNNING.format(path=path), Styles.INFO))
    try:
        response = perform_search(request)
    except ValueError as exc:
        console.print(_styled(str(exc), Styles.ERROR))
        raise typer.Exit(code=1)

    if output_format == OutputFormat.json:
        typer.echo(json.dumps(response.to_dict(), indent=2, ensure_ascii=False))
        if not response.success:
            raise typer.Exit(code=1)
        return

    if not response.success:
        console.print(_styled(response.message or Messages.ERROR_SEARCH_FAILED.format(reason="unknown"), Styles.ERROR))
        raise typer.Exit(code=1)
    if not response.matches:
        console.print(_styled(Messages.INFO_NO_RESULTS, Styles.WARNING))
        if response.suggestions and response.suggestions.alternative_queries:
            queries = "; ".join(response.suggestions.alternative_queries)
            console.print(_styled(Messages.INFO_SUGGESTIONS.format(queries=queries), Styles.INFO))
        return
    _render_results(response.matches, path.resolve(), response.metadata.get("reranker"))
    if context_lines > 0:
        _render_context(response.matches, path.resolve())


@app.command(help=Messages.HELP_STATUS)
def status(
    path: Path | None = typer.Option(None, "--path", "-p", help=Messages.HELP_SEARCH_PATH),
    output_format: OutputFormat = typer.Option(
        OutputFormat.rich, "--format", help=Messages.HELP_SEARCH_FORMAT
    ),
) -> None:
    reports = index_status(path)
    if output_format == OutputFormat.json:
        typer.echo(json.dumps([report.to_dict() for report in reports], indent=2))
        return
    if not reports:
        console.print(_styled(Messages.INFO_STATUS_EMPTY, Styles.WARNING))
        return
    console.print(_styled(Messages.STATUS_TITLE, Styles.TITLE))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.STATUS_HEADER_PATH, overflow="fold")
    table.add_column(Messages.STATUS_HEADER_NAMESPACE)
    table.add_column(Messages.STATUS_HEADER_CHUNKS, justify="right")
    table.add_column(Messages.STATUS_HEADER_INDEXED)
    table.add_column(Messages.STATUS_HEADER_STATE)
    for report in reports:
        entry = report.entry
        if report.locked:
            state = "indexing"
        elif entry is None:
            state = "not indexed"
        elif entry.failed:
            state = f"failed: {entry.failure_reason or '-'}"
        else:
            state = report.snapshot.indexing_method
        table.add_row(
            report.path,
            report.namespace,
            str(report.snapshot.total_chunks if report.snapshot.has_index else (entry.total_chunks if entry else 0)),
            (entry.indexed_at if entry else None) or "-",
            state,
        )
    console.print(table)


@app.command(help=Messages.HELP_CLEAR)
def clear(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help=Messages.HELP_INDEX_PATH),
) -> None:
    try:
        removed = clear_index(path)
    except (RuntimeError, OSError) as exc:
        console.print(_styled(str(exc), Styles.ERROR))
        raise typer.Exit(code=1)
    if removed:
        console.print(_styled(Messages.INFO_INDEX_CLEARED.format(path=path), Styles.SUCCESS))
    else:
        console.print(_styled(Messages.INFO_INDEX_CLEAR_NONE.format(path=path), Styles.WARNING))


@app.command()
def config(
    assignments: list[str] | None = typer.Option(
        None, "--set", help=Messages.HELP_CONFIG_SET
    ),
    show: bool = typer.Option(False, "--show", help=Messages.HELP_CONFIG_SHOW),
) -> None:
    """Show or update the stored configuration."""
    if assignments:
        try:
            changes = _parse_assignments(assignments, load_config())
            update_config(**changes)
        except ValueError as exc:
            console.print(_styled(str(exc), Styles.ERROR))
            raise typer.Exit(code=1)
        console.print(_styled(Messages.INFO_CONFIG_SAVED, Styles.SUCCESS))
        if not show:
            return
    _render_config(load_config())


def _parse_assignments(assignments: Sequence[str], current: Config) -> dict[str, object]:
    changes: dict[str, object] = {}
    remote: dict[str, object] = {}
    for raw in assignments:
        key, sep, value = raw.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(Messages.ERROR_CONFIG_ASSIGNMENT.format(value=raw))
        cleaned: object = value.strip() or None
        if key.startswith("remote_rerank."):
            remote[key.split(".", 1)[1]] = cleaned
        else:
            changes[key] = cleaned
    if remote:
        merged = asdict(current.remote_rerank) if current.remote_rerank else {}
        merged.update(remote)
        changes["remote_rerank"] = merged
    return changes


def _render_config(config: Config) -> None:
    console.print(_styled(str(config_file()), Styles.INFO))
    table = Table(show_header=False)
    table.add_column("key")
    table.add_column("value", overflow="fold")
    for item in fields(Config):
        value = getattr(config, item.name)
        if item.name in _SECRET_FIELDS and value:
            value = _mask(value)
        elif item.name == "remote_rerank" and value is not None:
            value = f"{value.model or '-'} @ {value.base_url or '-'}"
        table.add_row(item.name, "-" if value is None else str(value))
    console.print(table)


def _mask(secret: str) -> str:
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


def _render_results(matches: Sequence[SearchMatch], base: Path, reranker: str | None) -> None:
    console.print(_styled(Messages.TABLE_TITLE, Styles.TITLE))
    if reranker:
        console.print(_styled(f"reranker: {reranker}", Styles.INFO))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_INDEX, justify="right")
    table.add_column(Messages.TABLE_HEADER_SCORE, justify="right")
    table.add_column(Messages.TABLE_HEADER_LOCATION, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_TYPE)
    table.add_column(Messages.TABLE_HEADER_SYMBOLS, overflow="fold")
    for idx, match in enumerate(matches, start=1):
        chunk = match.chunk
        table.add_row(
            str(idx),
            f"{match.score:.3f}",
            f"{format_path(chunk.file_path, base)}:{chunk.start_line}-{chunk.end_line}",
            f"{match.match_type}/{chunk.chunk_type}",
            ", ".join(chunk.symbol_names()[:5]) or "-",
        )
    console.print(table)


def _render_context(matches: Sequence[SearchMatch], base: Path) -> None:
    for idx, match in enumerate(matches, start=1):
        chunk = match.chunk
        console.print(
            _styled(f"#{idx} {format_path(chunk.file_path, base)}:{chunk.start_line}", Styles.TITLE)
        )
        if match.context_before:
            console.print(match.context_before, style=Styles.INFO, markup=False, highlight=False)
        console.print(chunk.content, markup=False, highlight=False)
        if match.context_after:
            console.print(match.context_after, style=Styles.INFO, markup=False, highlight=False)


def run(argv: list[str] | None = None) -> None:
    """Entry point wrapper allowing optional argument override."""
    if argv is None:
        app()
    else:
        app(args=argv)
