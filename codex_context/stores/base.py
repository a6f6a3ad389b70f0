"""Vector store capability shared by the local and Turbopuffer backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

import numpy as np

from ..config import Config, SUPPORTED_STORES
from ..models import Chunk, StoreRow
from ..text import Messages


@dataclass(slots=True)
class UpsertRow:
    chunk: Chunk
    vector: np.ndarray


@dataclass(slots=True)
class QueryFilters:
    file_types: tuple[str, ...] = ()
    chunk_types: tuple[str, ...] = ()

    def accepts(self, chunk: Chunk | None) -> bool:
        if chunk is None:
            return True
        if self.file_types and not chunk.relative_path.lower().endswith(self.file_types):
            return False
        if self.chunk_types and chunk.chunk_type not in self.chunk_types:
            return False
        return True


@dataclass(slots=True)
class HybridRows:
    vector_rows: list[StoreRow] = field(default_factory=list)
    lexical_rows: list[StoreRow] = field(default_factory=list)


class VectorStore(Protocol):
    def upsert(self, namespace: str, rows: Sequence[UpsertRow]) -> None: ...

    def query(
        self,
        namespace: str,
        *,
        vector: np.ndarray | None = None,
        text: str | None = None,
        symbols: Sequence[str] | None = None,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> list[StoreRow]: ...

    def hybrid_query(
        self,
        namespace: str,
        *,
        vector: np.ndarray,
        text: str,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> HybridRows: ...

    def namespace_exists(self, namespace: str) -> bool: ...

    def delete_namespace(self, namespace: str) -> None: ...

    def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None: ...

    def chunk_ids_for_file(self, namespace: str, file_path: str) -> list[str]: ...


def chunk_attributes(chunk: Chunk) -> dict[str, Any]:
    """Flatten a chunk into the attribute set stored next to its vector."""
    data = chunk.to_dict()
    data.pop("id", None)
    data["symbolNames"] = chunk.symbol_names()
    return data


def decode_row(row_id: str, score: float, attributes: Mapping[str, Any] | None) -> StoreRow:
    """Decode a loosely typed store hit once, at the store boundary."""
    chunk: Chunk | None = None
    if attributes and attributes.get("filePath"):
        payload = dict(attributes)
        payload["id"] = row_id
        try:
            chunk = Chunk.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            chunk = None
    return StoreRow(id=row_id, score=float(score), chunk=chunk)


def create_store(config: Config, data_dir: Path) -> VectorStore:
    """Return the configured vector store backend."""
    store = (config.store or "").lower()
    if store == "local":
        from .local import LocalVectorStore

        return LocalVectorStore(Path(data_dir) / "vectors.db")
    if store == "turbopuffer":
        from .turbopuffer import TurbopufferVectorStore

        return TurbopufferVectorStore.from_config(config)
    raise RuntimeError(
        Messages.ERROR_STORE_INVALID.format(value=store, allowed=", ".join(SUPPORTED_STORES))
    )
