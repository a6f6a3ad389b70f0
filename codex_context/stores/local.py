"""SQLite backed vector store used when no hosted store is configured."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from threading import Lock
from typing import Iterable, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from ..lexical import bm25_scores, bm25_tokenize
from ..models import StoreRow
from .base import HybridRows, QueryFilters, UpsertRow, chunk_attributes, decode_row

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA temp_store = MEMORY;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS store_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS chunk_vector (
            namespace TEXT NOT NULL,
            chunk_id TEXT NOT NULL,
            file_path TEXT NOT NULL,
            attributes TEXT NOT NULL,
            symbols TEXT NOT NULL DEFAULT '',
            dimension INTEGER NOT NULL,
            vector BLOB NOT NULL,
            PRIMARY KEY (namespace, chunk_id)
        );

        CREATE INDEX IF NOT EXISTS idx_chunk_vector_file
            ON chunk_vector(namespace, file_path);
        """
    )
    conn.execute(
        "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', ?)",
        (str(SCHEMA_VERSION),),
    )


class LocalVectorStore:
    """Brute-force cosine similarity and BM25 over rows kept in one SQLite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = Lock()
        self._conn = _connect(self.db_path)
        with self._conn:
            _ensure_schema(self._conn)

    def close(self) -> None:
        self._conn.close()

    def upsert(self, namespace: str, rows: Sequence[UpsertRow]) -> None:
        payload = []
        for row in rows:
            vector = np.asarray(row.vector, dtype=np.float32).reshape(-1)
            payload.append(
                (
                    namespace,
                    row.chunk.id,
                    row.chunk.file_path,
                    json.dumps(chunk_attributes(row.chunk), ensure_ascii=False),
                    " ".join(row.chunk.symbol_names()),
                    int(vector.size),
                    vector.tobytes(),
                )
            )
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT OR REPLACE INTO chunk_vector
                    (namespace, chunk_id, file_path, attributes, symbols, dimension, vector)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                payload,
            )

    def _rows(self, namespace: str) -> list[sqlite3.Row]:
        with self._lock, closing(self._conn.cursor()) as cursor:
            cursor.execute(
                "SELECT chunk_id, attributes, symbols, dimension, vector "
                "FROM chunk_vector WHERE namespace = ? ORDER BY chunk_id",
                (namespace,),
            )
            return cursor.fetchall()

    def query(
        self,
        namespace: str,
        *,
        vector: np.ndarray | None = None,
        text: str | None = None,
        symbols: Sequence[str] | None = None,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> list[StoreRow]:
        active = filters or QueryFilters()
        rows = [
            (record, decode_row(record["chunk_id"], 0.0, json.loads(record["attributes"])))
            for record in self._rows(namespace)
        ]
        rows = [(record, decoded) for record, decoded in rows if active.accepts(decoded.chunk)]
        if not rows:
            return []
        if vector is not None:
            scores = self._cosine(vector, [record for record, _ in rows])
        elif symbols:
            scores = [_symbol_score(record["symbols"].split(), symbols) for record, _ in rows]
        elif text:
            scores = self._bm25([decoded for _, decoded in rows], text)
        else:
            scores = [0.0 for _ in rows]
        ranked = sorted(
            (
                StoreRow(id=decoded.id, score=float(score), chunk=decoded.chunk)
                for (_, decoded), score in zip(rows, scores)
                if vector is not None or score > 0
            ),
            key=lambda item: (-item.score, item.id),
        )
        return ranked[:limit]

    def hybrid_query(
        self,
        namespace: str,
        *,
        vector: np.ndarray,
        text: str,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> HybridRows:
        return HybridRows(
            vector_rows=self.query(namespace, vector=vector, limit=limit, filters=filters),
            lexical_rows=self.query(namespace, text=text, limit=limit, filters=filters),
        )

    def namespace_exists(self, namespace: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM chunk_vector WHERE namespace = ? LIMIT 1", (namespace,)
            ).fetchone()
        return row is not None

    def delete_namespace(self, namespace: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM chunk_vector WHERE namespace = ?", (namespace,))

    def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        with self._lock, self._conn:
            self._conn.executemany(
                "DELETE FROM chunk_vector WHERE namespace = ? AND chunk_id = ?",
                [(namespace, chunk_id) for chunk_id in ids],
            )

    def chunk_ids_for_file(self, namespace: str, file_path: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT chunk_id FROM chunk_vector WHERE namespace = ? AND file_path = ? "
                "ORDER BY chunk_id",
                (namespace, file_path),
            ).fetchall()
        return [row["chunk_id"] for row in rows]

    @staticmethod
    def _cosine(vector: np.ndarray, records: Iterable[sqlite3.Row]) -> list[float]:
        query = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        matrix = []
        for record in records:
            stored = np.frombuffer(record["vector"], dtype=np.float32)
            if stored.size != query.shape[1]:
                logger.warning(
                    "Skipping %s: dimension %d does not match query %d",
                    record["chunk_id"],
                    stored.size,
                    query.shape[1],
                )
                stored = np.zeros(query.shape[1], dtype=np.float32)
            matrix.append(stored)
        return [float(score) for score in cosine_similarity(query, np.vstack(matrix))[0]]

    @staticmethod
    def _bm25(rows: Sequence[StoreRow], text: str) -> list[float]:
        documents = [
            bm25_tokenize(
                " ".join(
                    [row.chunk.relative_path, " ".join(row.chunk.symbol_names()), row.chunk.content]
                )
            )
            if row.chunk is not None
            else []
            for row in rows
        ]
        return bm25_scores(bm25_tokenize(text), documents)


def _symbol_score(stored: Sequence[str], wanted: Sequence[str]) -> float:
    names = set(stored)
    lowered = [name.lower() for name in stored]
    best = 0.0
    for symbol in wanted:
        if symbol in names:
            return 1.0
        needle = symbol.lower()
        if any(needle in name for name in lowered):
            best = 0.7
    return best
