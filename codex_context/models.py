"""Core data types shared by the extraction, indexing and search services."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Mapping

CHUNK_TYPES: tuple[str, ...] = (
    "class",
    "function",
    "interface",
    "type",
    "module",
    "mixed",
    "gap",
)
MATCH_TYPES: tuple[str, ...] = ("semantic", "lexical", "dependency", "symbol")
CHUNK_ID_MAX_BYTES = 60
SNAPSHOT_VERSION = "1.0.0"

_ID_SAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True, slots=True)
class SymbolRef:
    name: str
    kind: str
    line: int
    parent: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "type": self.kind, "line": self.line}
        if self.parent:
            data["parent"] = self.parent
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SymbolRef":
        return cls(
            name=str(raw.get("name", "")),
            kind=str(raw.get("type") or raw.get("kind") or "unknown"),
            line=int(raw.get("line") or 0),
            parent=raw.get("parent") or None,
        )


@dataclass(frozen=True, slots=True)
class ImportRef:
    module: str
    names: tuple[str, ...] = ()
    line: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"module": self.module, "imports": list(self.names), "line": self.line}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ImportRef":
        return cls(
            module=str(raw.get("module", "")),
            names=tuple(str(name) for name in raw.get("imports") or ()),
            line=int(raw.get("line") or 0),
        )


def make_chunk_id(file_path: str, suffix: str) -> str:
    """Return a short, deterministic chunk id within the store key budget."""

    name = PurePath(file_path).name or file_path
    base_name = _ID_SAFE_RE.sub("_", name.split(".")[0]) or "file"
    path_hash = hashlib.md5(file_path.encode("utf-8")).hexdigest()[:8]
    chunk_id = f"{base_name}_{path_hash}_{suffix}"
    return fit_chunk_id(chunk_id)


def fit_chunk_id(chunk_id: str) -> str:
    """Hash and truncate *chunk_id* when it exceeds the byte budget."""

    if len(chunk_id.encode("utf-8")) <= CHUNK_ID_MAX_BYTES:
        return chunk_id
    digest = hashlib.sha1(chunk_id.encode("utf-8")).hexdigest()[:16]
    prefix = _ID_SAFE_RE.sub("_", chunk_id)[: CHUNK_ID_MAX_BYTES - len(digest) - 1]
    return f"{prefix}_{digest}"


def calculate_complexity(content: str) -> str:
    lines = len(content.split("\n"))
    braces = content.count("{")
    if lines < 20 and braces < 3:
        return "low"
    if lines < 100 and braces < 10:
        return "medium"
    return "high"


@dataclass(slots=True)
class Chunk:
    """A contiguous span of one file used as a unit of retrieval."""

    id: str
    content: str
    file_path: str
    relative_path: str
    start_line: int
    end_line: int
    language: str
    chunk_type: str = "mixed"
    symbols: list[SymbolRef] = field(default_factory=list)
    imports: list[ImportRef] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    complexity: str = "low"

    def __post_init__(self) -> None:
        if self.chunk_type not in CHUNK_TYPES:
            self.chunk_type = "mixed"
        if self.end_line < self.start_line:
            raise ValueError(
                f"Chunk {self.id} ends before it starts ({self.start_line} > {self.end_line})"
            )

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def symbol_names(self) -> list[str]:
        seen: dict[str, None] = {}
        for symbol in self.symbols:
            seen.setdefault(symbol.name, None)
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "filePath": self.file_path,
            "relativePath": self.relative_path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "language": self.language,
            "chunkType": self.chunk_type,
            "symbols": [symbol.to_dict() for symbol in self.symbols],
            "imports": [item.to_dict() for item in self.imports],
            "references": list(self.references),
            "size": self.size,
            "complexity": self.complexity,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Chunk":
        return cls(
            id=str(raw["id"]),
            content=str(raw.get("content") or ""),
            file_path=str(raw.get("filePath") or ""),
            relative_path=str(raw.get("relativePath") or ""),
            start_line=int(raw.get("startLine") or 1),
            end_line=int(raw.get("endLine") or raw.get("startLine") or 1),
            language=str(raw.get("language") or "text"),
            chunk_type=str(raw.get("chunkType") or "mixed"),
            symbols=[SymbolRef.from_dict(item) for item in raw.get("symbols") or ()],
            imports=[ImportRef.from_dict(item) for item in raw.get("imports") or ()],
            references=[str(item) for item in raw.get("references") or ()],
            complexity=str(raw.get("complexity") or "low"),
        )


@dataclass(slots=True)
class ExtractionMetrics:
    total_nodes: int = 0
    total_chunks: int = 0
    average_chunk_size: float = 0.0
    processing_time: float = 0.0


@dataclass(slots=True)
class ExtractionResult:
    chunks: list[Chunk]
    parse_errors: list[str] = field(default_factory=list)
    metrics: ExtractionMetrics = field(default_factory=ExtractionMetrics)


@dataclass(slots=True)
class FileFingerprint:
    """Per-file state persisted for incremental indexing."""

    path: str
    relative_path: str
    last_modified: float
    size: int
    content_hash: str
    chunk_ids: list[str] = field(default_factory=list)
    symbols: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    indexed_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "filePath": self.path,
            "relativePath": self.relative_path,
            "lastModified": self.last_modified,
            "size": self.size,
            "contentHash": self.content_hash,
            "chunkIds": list(self.chunk_ids),
            "symbols": list(self.symbols),
            "imports": list(self.imports),
            "references": list(self.references),
            "dependsOn": list(self.depends_on),
            "dependents": list(self.dependents),
            "indexedAt": self.indexed_at,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FileFingerprint":
        return cls(
            path=str(raw["filePath"]),
            relative_path=str(raw.get("relativePath") or ""),
            last_modified=float(raw["lastModified"]),
            size=int(raw["size"]),
            content_hash=str(raw["contentHash"]),
            chunk_ids=[str(item) for item in raw.get("chunkIds") or ()],
            symbols=[str(item) for item in raw.get("symbols") or ()],
            imports=[str(item) for item in raw.get("imports") or ()],
            references=[str(item) for item in raw.get("references") or ()],
            depends_on=[str(item) for item in raw.get("dependsOn") or ()],
            dependents=[str(item) for item in raw.get("dependents") or ()],
            indexed_at=float(raw.get("indexedAt") or 0.0),
        )


@dataclass(slots=True)
class IndexSnapshot:
    codebase_path: str
    namespace: str
    last_indexed: str
    total_files: int = 0
    total_chunks: int = 0
    indexing_method: str = "full"
    version: str = SNAPSHOT_VERSION
    files: dict[str, FileFingerprint] = field(default_factory=dict)

    def refresh_totals(self) -> None:
        self.total_files = len(self.files)
        self.total_chunks = sum(len(item.chunk_ids) for item in self.files.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "codebasePath": self.codebase_path,
            "namespace": self.namespace,
            "lastIndexed": self.last_indexed,
            "totalFiles": self.total_files,
            "totalChunks": self.total_chunks,
            "indexingMethod": self.indexing_method,
            "version": self.version,
            "fileMetadata": [
                [path, fingerprint.to_dict()]
                for path, fingerprint in sorted(self.files.items())
            ],
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "IndexSnapshot":
        files: dict[str, FileFingerprint] = {}
        for entry in raw.get("fileMetadata") or ():
            path, payload = entry
            files[str(path)] = FileFingerprint.from_dict(payload)
        return cls(
            codebase_path=str(raw["codebasePath"]),
            namespace=str(raw["namespace"]),
            last_indexed=str(raw.get("lastIndexed") or ""),
            total_files=int(raw.get("totalFiles") or 0),
            total_chunks=int(raw.get("totalChunks") or 0),
            indexing_method=str(raw.get("indexingMethod") or "full"),
            version=str(raw.get("version") or SNAPSHOT_VERSION),
            files=files,
        )


@dataclass(slots=True)
class ChangeSet:
    new_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    unchanged_files: list[str] = field(default_factory=list)
    dependency_changes: list[str] = field(default_factory=list)

    @property
    def files_to_process(self) -> list[str]:
        ordered = dict.fromkeys(
            [*self.new_files, *self.modified_files, *self.dependency_changes]
        )
        return list(ordered)

    @property
    def is_noop(self) -> bool:
        return not (
            self.new_files
            or self.modified_files
            or self.deleted_files
            or self.dependency_changes
        )


@dataclass(slots=True)
class StoreRow:
    """A vector store hit decoded at the store boundary."""

    id: str
    score: float
    chunk: Chunk | None = None


@dataclass(slots=True)
class SearchMatch:
    """A ranked chunk returned to a caller."""

    chunk: Chunk
    score: float
    match_type: str = "semantic"
    original_score: float | None = None
    rerank_score: float | None = None
    related_matches: list[str] = field(default_factory=list)
    context_before: str | None = None
    context_after: str | None = None

    @property
    def id(self) -> str:
        return self.chunk.id

    def to_dict(self) -> dict[str, Any]:
        data = self.chunk.to_dict()
        data.update(
            {
                "score": self.score,
                "matchType": self.match_type,
                "relatedMatches": list(self.related_matches),
            }
        )
        if self.original_score is not None:
            data["originalScore"] = self.original_score
        if self.rerank_score is not None:
            data["rerankScore"] = self.rerank_score
        if self.context_before is not None:
            data["contextBefore"] = self.context_before
        if self.context_after is not None:
            data["contextAfter"] = self.context_after
        return data


@dataclass(frozen=True, slots=True)
class LockRecord:
    operation: str
    pid: int
    start_time: str

    def to_dict(self) -> dict[str, Any]:
        return {"operation": self.operation, "pid": self.pid, "startTime": self.start_time}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LockRecord":
        return cls(
            operation=str(raw["operation"]),
            pid=int(raw["pid"]),
            start_time=str(raw["startTime"]),
        )
