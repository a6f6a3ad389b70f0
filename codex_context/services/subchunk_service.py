"""Split oversized chunks into context-carrying sub-chunks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

from ..models import Chunk, SymbolRef, calculate_complexity, fit_chunk_id
from .symbol_service import extract_references

logger = logging.getLogger(__name__)

MAX_SUBCHUNK_SIZE = 1500
MIN_OVERLAP_SIZE = 1000
CONTEXT_MARGIN = 100
SUBCHUNK_MARKER = "// --- Sub-chunk content ---"

SECTION_PRIORITY = {
    "import": 10,
    "export": 9,
    "interface": 8,
    "class": 7,
    "function": 6,
    "header": 5,
    "comment": 3,
    "other": 1,
}

_IMPORT_EXPORT_RE = re.compile(r"^(import|export)\s+")
_HEADER_RE = re.compile(r"^(interface|type|enum|const|let|var)\s+")
_CLASS_RE = re.compile(r"^(export\s+)?class\s+\w+")
_FUNCTION_RES = (
    re.compile(r"^(export\s+)?(async\s+)?function\s+\w+"),
    re.compile(r"^\s*\w+\s*\([^)]*\)\s*[:{]"),
    re.compile(r"^(public|private|protected)\s+\w+\s*\("),
)
_COMMENT_RE = re.compile(r"^(/\*\*|//|\s*\*)")
_BOUNDARY_RE = re.compile(r"^(/\*\*|export|class|interface|function)")
_FROM_RE = re.compile(r"from\s+['\"]([^'\"]+)['\"]")
_CALL_RE = re.compile(r"(\w+)\s*\(")


@dataclass(slots=True)
class Section:
    content: str
    kind: str
    start_line: int
    end_line: int
    symbols: list[SymbolRef] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    priority: int = 1

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(slots=True)
class ValidationReport:
    is_valid: bool
    issues: list[str]
    metrics: dict[str, float]


def detect_section_type(line: str, depth: int) -> str:
    """Classify a stripped line given the brace depth after it."""
    match = _IMPORT_EXPORT_RE.match(line)
    if match:
        return "export" if line.startswith("export") else "import"
    if depth == 0 and _HEADER_RE.match(line):
        return "interface" if line.startswith(("interface", "type")) else "header"
    if _CLASS_RE.match(line):
        return "class"
    if any(pattern.match(line) for pattern in _FUNCTION_RES):
        return "function"
    if _COMMENT_RE.match(line):
        return "comment"
    return "other"


def is_natural_boundary(line: str, depth: int) -> bool:
    if depth == 0 and line in ("}", ""):
        return True
    return bool(_BOUNDARY_RE.match(line))


def section_dependencies(content: str) -> list[str]:
    found: dict[str, None] = {}
    for match in _FROM_RE.finditer(content):
        found.setdefault(match.group(1), None)
    for match in _CALL_RE.finditer(content):
        found.setdefault(match.group(1), None)
    return [item for item in found if item]


def section_priority(kind: str, symbols: Sequence[SymbolRef]) -> int:
    priority = SECTION_PRIORITY.get(kind, 1)
    if len(symbols) > 3:
        priority += 2
    return min(priority, 10)


class SubChunker:
    """Re-segment a chunk by line into typed sections and regroup them under a size ceiling."""

    def __init__(
        self,
        max_size: int = MAX_SUBCHUNK_SIZE,
        min_overlap: int = MIN_OVERLAP_SIZE,
    ) -> None:
        self.max_size = max_size
        self.min_overlap = min_overlap

    def split(self, chunk: Chunk) -> list[Chunk]:
        if chunk.size <= self.max_size:
            return [chunk]
        sections = self.sections(chunk)
        header, global_context = self._context(sections)
        groups = self._group(sections, len(header) + len(global_context) + CONTEXT_MARGIN)
        sub_chunks = [
            self._build(chunk, group, header, global_context, index)
            for index, group in enumerate(groups)
        ]
        logger.debug("Split %s (%d chars) into %d sub-chunks", chunk.id, chunk.size, len(sub_chunks))
        return sub_chunks

    def sections(self, chunk: Chunk) -> list[Section]:
        lines = chunk.content.split("\n")
        sections: list[Section] = []
        current: list[str] = []
        current_kind = "other"
        section_start = 0
        depth = 0
        for index, line in enumerate(lines):
            stripped = line.strip()
            depth += line.count("{") - line.count("}")
            kind = detect_section_type(stripped, depth)
            if kind != current_kind or is_natural_boundary(stripped, depth):
                if current:
                    sections.extend(
                        self._make_sections(current, current_kind, chunk, section_start)
                    )
                current = [line]
                current_kind = kind
                section_start = index
            else:
                current.append(line)
        if current:
            sections.extend(self._make_sections(current, current_kind, chunk, section_start))
        return sections

    def _make_sections(
        self, lines: list[str], kind: str, chunk: Chunk, offset: int
    ) -> list[Section]:
        """Build one section, cutting it on line boundaries when it alone exceeds the ceiling."""
        budget = max(1, self.max_size - CONTEXT_MARGIN)
        pieces: list[tuple[int, list[str]]] = []
        piece: list[str] = []
        piece_start = offset
        size = 0
        for index, line in enumerate(lines):
            extra = len(line) + (1 if piece else 0)
            if piece and size + extra > budget:
                pieces.append((piece_start, piece))
                piece, size, piece_start = [], 0, offset + index
                extra = len(line)
            piece.append(line)
            size += extra
        pieces.append((piece_start, piece))

        sections: list[Section] = []
        for start_index, body in pieces:
            start_line = chunk.start_line + start_index
            end_line = start_line + len(body) - 1
            content = "\n".join(body)
            symbols = [s for s in chunk.symbols if start_line <= s.line <= end_line]
            sections.append(
                Section(
                    content=content,
                    kind=kind,
                    start_line=start_line,
                    end_line=end_line,
                    symbols=symbols,
                    dependencies=section_dependencies(content),
                    priority=section_priority(kind, symbols),
                )
            )
        return sections

    @staticmethod
    def _context(sections: Sequence[Section]) -> tuple[str, str]:
        header = [s.content for s in sections if s.kind in ("import", "header")]
        global_parts = [s.content for s in sections if s.kind in ("interface", "export")]
        return "\n\n".join(header), "\n\n".join(global_parts[:3])

    def _group(self, sections: Sequence[Section], context_size: int) -> list[list[Section]]:
        groups: list[list[Section]] = []
        current: list[Section] = []
        current_size = 0
        for section in sections:
            projected = current_size + section.size + context_size
            if projected > self.max_size and current:
                groups.append(current)
                current = self._overlap(current) + [section]
                current_size = sum(item.size for item in current)
            else:
                current.append(section)
                current_size += section.size
        if current:
            groups.append(current)
        return groups

    def _overlap(self, previous: Sequence[Section]) -> list[Section]:
        carried: list[Section] = []
        carried_size = 0
        for section in reversed(previous):
            if section.priority >= 7 and carried_size + section.size < self.min_overlap:
                carried.insert(0, section)
                carried_size += section.size
        return carried

    @staticmethod
    def _build(
        original: Chunk,
        sections: Sequence[Section],
        header: str,
        global_context: str,
        index: int,
    ) -> Chunk:
        parts: list[str] = []
        if header.strip():
            parts.extend([header, ""])
        if global_context.strip():
            parts.extend([global_context, ""])
        parts.append(SUBCHUNK_MARKER)
        parts.extend(section.content for section in sections)
        content = "\n".join(parts)

        body = "\n".join(section.content for section in sections)
        dependencies = {dep for section in sections for dep in section.dependencies}
        imports = [
            item
            for item in original.imports
            if item.module in dependencies or item.module in body
        ]
        symbols: list[SymbolRef] = []
        for section in sections:
            for symbol in section.symbols:
                if symbol not in symbols:
                    symbols.append(symbol)
        return Chunk(
            id=fit_chunk_id(f"{original.id}_sub{index}"),
            content=content,
            file_path=original.file_path,
            relative_path=original.relative_path,
            start_line=min(section.start_line for section in sections),
            end_line=max(section.end_line for section in sections),
            language=original.language,
            chunk_type=original.chunk_type,
            symbols=symbols,
            imports=imports,
            references=extract_references(body, imports),
            complexity=calculate_complexity(content),
        )

    def validate(self, original: Chunk, sub_chunks: Sequence[Chunk]) -> ValidationReport:
        """Check sub-chunks for missing imports, orphaned content, size and line coverage."""
        issues: list[str] = []
        total_symbols = 0
        total_size = 0
        covered: set[int] = set()
        for item in sub_chunks:
            total_symbols += len(item.symbols)
            total_size += item.size
            covered.update(range(item.start_line, item.end_line + 1))
            if not item.imports and "import " in item.content:
                issues.append(f"Sub-chunk {item.id} may be missing import context")
            if not item.symbols and item.size > 1000:
                issues.append(f"Sub-chunk {item.id} has no symbols despite significant content")
            if item.size > self.max_size:
                issues.append(f"Sub-chunk {item.id} exceeds size limit: {item.size}")
        missing = [
            line for line in range(original.start_line, original.end_line + 1) if line not in covered
        ]
        if missing:
            issues.append(
                f"Lines {missing[0]}-{missing[-1]} of {original.id} are not covered by any sub-chunk"
            )
        count = len(sub_chunks) or 1
        return ValidationReport(
            is_valid=not issues,
            issues=issues,
            metrics={
                "total_symbols": float(total_symbols),
                "average_size": total_size / count,
                "context_preservation": sum(1 for c in sub_chunks if c.imports) / count,
            },
        )


def split_chunks(chunks: Sequence[Chunk], splitter: SubChunker | None = None) -> list[Chunk]:
    """Route every chunk through the sub-chunker, preserving order."""

    active = splitter or SubChunker()
    result: list[Chunk] = []
    for chunk in chunks:
        parts = active.split(chunk)
        if len(parts) > 1:
            for issue in active.validate(chunk, parts).issues:
                logger.debug("%s", issue)
        result.extend(parts)
    return result
