"""Syntax-tree driven chunk extraction for source files."""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import TYPE_CHECKING, Sequence

import tree_sitter_javascript as ts_js
import tree_sitter_typescript as ts_ts
from tree_sitter import Language, Parser

from ..models import (
    Chunk,
    ExtractionMetrics,
    ExtractionResult,
    SymbolRef,
    calculate_complexity,
    make_chunk_id,
)
from ..text import Messages
from .symbol_service import (
    FallbackSymbolExtractor,
    PatternSymbolExtractor,
    default_symbol_extractor,
    extract_imports,
    extract_references,
)

if TYPE_CHECKING:
    from tree_sitter import Node, Tree

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 2000
MIN_CHUNK_SIZE = 100
PARSER_BYTE_LIMIT = 32768
MERGE_GAP = 100
FALLBACK_LINES = 50
WINDOW_SIZE = 30_000
WINDOW_OVERLAP = 2_000
WINDOW_WORKERS = 4

# Nodes whose children are not searched once the node itself became a unit.
_OPAQUE_UNIT_NODES = frozenset(
    {"class_declaration", "abstract_class_declaration", "internal_module", "module"}
)
_WINDOW_BOUNDARY_RE = re.compile(
    r"^(?:export\s+(?:default\s+)?)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
    r"(?:class|function|const|let|var|interface|type|enum|namespace)\b"
)


@lru_cache(maxsize=None)
def grammar_for(language: str) -> Language | None:
    """Return the tree-sitter grammar for *language*, or None when none is bundled."""
    normalized = (language or "").lower()
    if normalized == "typescript":
        return Language(ts_ts.language_typescript())
    if normalized == "tsx":
        return Language(ts_ts.language_tsx())
    if normalized == "javascript":
        return Language(ts_js.language())
    return None


def _parse(grammar: Language, source: bytes) -> "Tree":
    return Parser(grammar).parse(source)


class _Lines:
    """Line view of a text with O(1) span sizes."""

    def __init__(self, content: str) -> None:
        self.items = content.split("\n")
        self.prefix = [0]
        for line in self.items:
            self.prefix.append(self.prefix[-1] + len(line) + 1)

    def __len__(self) -> int:
        return len(self.items)

    def text(self, start: int, end: int) -> str:
        return "\n".join(self.items[start - 1 : end])

    def size(self, start: int, end: int) -> int:
        if end < start:
            return 0
        return self.prefix[end] - self.prefix[start - 1] - 1

    def blank(self, start: int, end: int) -> bool:
        return all(not line.strip() for line in self.items[start - 1 : end])


@dataclass(slots=True)
class _Span:
    start: int
    end: int
    chunk_type: str
    symbols: tuple[SymbolRef, ...] = ()
    suffix: str | None = None

    def merged(self, other: "_Span") -> "_Span":
        return _Span(
            start=self.start,
            end=max(self.end, other.end),
            chunk_type="mixed",
            symbols=self.symbols + tuple(s for s in other.symbols if s not in self.symbols),
        )

    def clipped(self, start: int) -> "_Span":
        return replace(
            self,
            start=start,
            symbols=tuple(s for s in self.symbols if s.line >= start),
        )

    def id_suffix(self) -> str:
        if self.suffix:
            return self.suffix
        if self.chunk_type == "gap":
            return f"gap_{self.start}-{self.end}"
        return f"{self.start}-{self.end}"


def _unit_type(node: "Node") -> str | None:
    node_type = node.type
    if node_type in ("class_declaration", "abstract_class_declaration"):
        return "class"
    if node_type == "interface_declaration":
        return "interface"
    if node_type in ("type_alias_declaration", "enum_declaration"):
        return "type"
    if node_type in (
        "function_declaration",
        "generator_function_declaration",
        "method_definition",
        "arrow_function",
    ):
        return "function"
    if node_type in ("lexical_declaration", "variable_declaration"):
        for child in node.named_children:
            value = child.child_by_field_name("value") if child.type == "variable_declarator" else None
            if value is not None and value.type == "arrow_function":
                return "function"
        return None
    if node_type in ("internal_module", "module"):
        return "module"
    if node_type == "export_statement":
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            return _unit_type(declaration) or "module"
        return "module"
    return None


@dataclass
class ChunkExtractor:
    """Turn source text into size-bounded, fully covering chunks."""

    max_chunk_size: int = MAX_CHUNK_SIZE
    min_chunk_size: int = MIN_CHUNK_SIZE
    parser_limit: int = PARSER_BYTE_LIMIT
    merge_gap: int = MERGE_GAP
    fallback_lines: int = FALLBACK_LINES
    window_size: int = WINDOW_SIZE
    window_overlap: int = WINDOW_OVERLAP
    window_workers: int = WINDOW_WORKERS
    _symbols: FallbackSymbolExtractor = field(default_factory=default_symbol_extractor, repr=False)
    _patterns: PatternSymbolExtractor = field(default_factory=PatternSymbolExtractor, repr=False)

    def extract(
        self,
        content: str,
        language: str,
        file_path: str,
        relative_path: str | None = None,
    ) -> ExtractionResult:
        started = time.perf_counter()
        lines = _Lines(content)
        parse_errors: list[str] = []
        visited = 0
        if not content.strip():
            return ExtractionResult(chunks=[], metrics=ExtractionMetrics())

        grammar = grammar_for(language)
        if grammar is None:
            logger.debug(Messages.PARSE_NO_GRAMMAR.format(language=language))
            spans = self._line_spans(lines)
        elif len(content.encode("utf-8")) <= self.parser_limit:
            try:
                tree = _parse(grammar, content.encode("utf-8"))
                units, visited = self._find_units(tree.root_node, lines, 0)
            except Exception as exc:
                logger.warning("%s: %s", file_path, Messages.PARSE_FALLBACK, exc_info=True)
                parse_errors.append(Messages.PARSE_FAILED.format(reason=exc))
                spans = self._line_spans(lines)
            else:
                spans = self._fill_gaps(self._place(units, lines), lines)
        else:
            units, visited, window_errors = self._parse_windows(grammar, lines)
            parse_errors.extend(window_errors)
            spans = self._fill_gaps(self._place(_dedup(units), lines), lines)

        chunks = [
            self._build_chunk(span, lines, language, file_path, relative_path or file_path)
            for span in spans
        ]
        elapsed = (time.perf_counter() - started) * 1000
        metrics = ExtractionMetrics(
            total_nodes=visited,
            total_chunks=len(chunks),
            average_chunk_size=(sum(c.size for c in chunks) / len(chunks)) if chunks else 0.0,
            processing_time=elapsed,
        )
        return ExtractionResult(chunks=chunks, parse_errors=parse_errors, metrics=metrics)

    def _find_units(
        self, root: "Node", lines: _Lines, line_offset: int
    ) -> tuple[list[_Span], int]:
        units: list[_Span] = []
        visited = 0
        stack = list(reversed(root.named_children))
        while stack:
            node = stack.pop()
            visited += 1
            unit_type = _unit_type(node)
            if unit_type is not None:
                start = line_offset + node.start_point[0] + 1
                end_row = node.end_point[0]
                if node.end_point[1] == 0 and end_row > node.start_point[0]:
                    end_row -= 1
                end = line_offset + end_row + 1
                if self.min_chunk_size <= lines.size(start, end) <= self.max_chunk_size:
                    symbols = self._symbols.extract(node, start, text=lines.text(start, end))
                    units.append(_Span(start, end, unit_type, tuple(symbols)))
                    if node.type in _OPAQUE_UNIT_NODES:
                        continue
            stack.extend(reversed(node.named_children))
        return units, visited

    def _place(self, units: Sequence[_Span], lines: _Lines) -> list[_Span]:
        """Order units, drop nested ones and merge close neighbours."""
        placed: list[_Span] = []
        for unit in sorted(units, key=lambda item: (item.start, -item.end)):
            if placed:
                prev = placed[-1]
                if unit.end <= prev.end:
                    continue
                if unit.start <= prev.end:
                    if lines.size(prev.start, unit.end) <= self.max_chunk_size:
                        placed[-1] = prev.merged(unit)
                        continue
                    unit = unit.clipped(prev.end + 1)
                gap = lines.size(prev.end + 1, unit.start - 1)
                if gap < self.merge_gap and lines.size(prev.start, unit.end) <= self.max_chunk_size:
                    placed[-1] = prev.merged(unit)
                    continue
            placed.append(unit)
        return placed

    def _gap_spans(self, lines: _Lines, start: int, end: int) -> list[_Span]:
        spans: list[_Span] = []
        piece_start = start
        for line_no in range(start + 1, end + 1):
            if lines.size(piece_start, line_no) > self.max_chunk_size:
                spans.append(_Span(piece_start, line_no - 1, "gap"))
                piece_start = line_no
        spans.append(_Span(piece_start, end, "gap"))
        for index, span in enumerate(spans):
            text = lines.text(span.start, span.end)
            spans[index] = replace(span, symbols=tuple(self._patterns.extract(text, span.start)))
        return spans

    def _fill_gaps(self, placed: Sequence[_Span], lines: _Lines) -> list[_Span]:
        """Cover every line, folding blank stretches into a neighbour that has room."""
        segments: list[_Span] = []
        cursor = 1
        for unit in placed:
            if unit.start > cursor:
                segments.extend(self._gap_spans(lines, cursor, unit.start - 1))
            segments.append(unit)
            cursor = unit.end + 1
        if cursor <= len(lines):
            segments.extend(self._gap_spans(lines, cursor, len(lines)))

        result: list[_Span] = []
        for index, segment in enumerate(segments):
            if segment.chunk_type == "gap" and lines.blank(segment.start, segment.end):
                if result and lines.size(result[-1].start, segment.end) <= self.max_chunk_size:
                    result[-1] = replace(result[-1], end=segment.end)
                    continue
                following = segments[index + 1] if index + 1 < len(segments) else None
                if (
                    following is not None
                    and lines.size(segment.start, following.end) <= self.max_chunk_size
                ):
                    segments[index + 1] = replace(following, start=segment.start)
                    continue
            result.append(segment)
        return result

    def _line_spans(self, lines: _Lines) -> list[_Span]:
        spans: list[_Span] = []
        step = max(1, self.fallback_lines)
        for index, start in enumerate(range(1, len(lines) + 1, step)):
            end = min(start + step - 1, len(lines))
            symbols = self._patterns.extract(lines.text(start, end), start)
            spans.append(_Span(start, end, "mixed", tuple(symbols), suffix=f"fb_{index}"))
        return spans

    def windows(self, lines: _Lines) -> list[tuple[int, int]]:
        """Return ``(first_line, last_line)`` windows that overlap and prefer declaration edges."""
        sizes = [len(line.encode("utf-8")) + 1 for line in lines.items]
        total = len(sizes)
        windows: list[tuple[int, int]] = []
        start = 0
        while start < total:
            end = start
            used = 0
            while end < total and (end == start or used + sizes[end] <= self.window_size):
                used += sizes[end]
                end += 1
            if end < total:
                midpoint = start + (end - start) // 2
                for index in range(end - 1, midpoint, -1):
                    if _WINDOW_BOUNDARY_RE.match(lines.items[index]):
                        end = index
                        break
            windows.append((start + 1, end))
            if end >= total:
                break
            back = end
            overlap = 0
            while back > start + 1 and overlap + sizes[back - 1] <= self.window_overlap:
                back -= 1
                overlap += sizes[back]
            start = back
        return windows

    def _parse_windows(
        self, grammar: Language, lines: _Lines
    ) -> tuple[list[_Span], int, list[str]]:
        windows = self.windows(lines)
        workers = max(1, min(self.window_workers, len(windows)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            outcomes = list(
                executor.map(lambda window: self._parse_window(grammar, lines, *window), windows)
            )
        units: list[_Span] = []
        visited = 0
        errors: list[str] = []
        for window_units, window_nodes, error in outcomes:
            units.extend(window_units)
            visited += window_nodes
            if error:
                errors.append(error)
        return units, visited, errors

    def _parse_window(
        self, grammar: Language, lines: _Lines, first: int, last: int
    ) -> tuple[list[_Span], int, str | None]:
        text = lines.text(first, last)
        try:
            source = text.encode("utf-8")
            if len(source) > self.parser_limit:
                raise ValueError(f"window of {len(source)} bytes exceeds parser limit")
            tree = _parse(grammar, source)
            units, visited = self._find_units(tree.root_node, lines, first - 1)
            return units, visited, None
        except Exception as exc:
            logger.warning("Window starting at line %d failed to parse: %s", first, exc)
            offset = lines.prefix[first - 1]
            symbols = self._patterns.extract(text, first)
            fallback = _Span(first, last, "mixed", tuple(symbols), suffix=f"fallback_{offset}")
            return [fallback], 0, Messages.PARSE_WINDOW_FAILED.format(line=first, reason=exc)

    def _build_chunk(
        self,
        span: _Span,
        lines: _Lines,
        language: str,
        file_path: str,
        relative_path: str,
    ) -> Chunk:
        content = lines.text(span.start, span.end)
        imports = extract_imports(content, span.start)
        return Chunk(
            id=make_chunk_id(file_path, span.id_suffix()),
            content=content,
            file_path=file_path,
            relative_path=relative_path,
            start_line=span.start,
            end_line=span.end,
            language=language,
            chunk_type=span.chunk_type,
            symbols=list(span.symbols),
            imports=imports,
            references=extract_references(content, imports),
            complexity=calculate_complexity(content),
        )


def _dedup(units: Sequence[_Span]) -> list[_Span]:
    seen: set[tuple[int, int, str]] = set()
    kept: list[_Span] = []
    for unit in units:
        key = (unit.start, unit.end, unit.chunk_type)
        if key in seen:
            continue
        seen.add(key)
        kept.append(unit)
    return kept


def extract_chunks(
    content: str,
    language: str,
    file_path: str,
    relative_path: str | None = None,
    **options: int,
) -> ExtractionResult:
    """Convenience wrapper around :class:`ChunkExtractor`."""

    return ChunkExtractor(**options).extract(content, language, file_path, relative_path)
