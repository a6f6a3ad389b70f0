"""Turbopuffer HTTP client implementing the vector store capability."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence
from urllib import error as urlerror
from urllib import request as urlrequest
from urllib.parse import quote

import numpy as np

from ..config import (
    Config,
    DEFAULT_STORE_TIMEOUT,
    DEFAULT_TURBOPUFFER_URL,
    resolve_turbopuffer_api_key,
)
from ..models import StoreRow
from ..text import Messages
from .base import HybridRows, QueryFilters, UpsertRow, chunk_attributes, decode_row

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 50
DELETE_BATCH_SIZE = 1000
MAX_TOP_K = 1000
_JSON_ATTRIBUTES = ("symbols", "imports")
_MISSING_NAMESPACE_CODES = {404, 422}


class StoreRequestError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TurbopufferVectorStore:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str | None = None,
        timeout: float = DEFAULT_STORE_TIMEOUT,
    ) -> None:
        if not api_key:
            raise RuntimeError(Messages.ERROR_TURBOPUFFER_KEY_MISSING)
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_TURBOPUFFER_URL).rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Config) -> "TurbopufferVectorStore":
        return cls(
            api_key=resolve_turbopuffer_api_key(config.turbopuffer_api_key),
            base_url=config.turbopuffer_base_url,
        )

    def upsert(self, namespace: str, rows: Sequence[UpsertRow]) -> None:
        for start in range(0, len(rows), UPSERT_BATCH_SIZE):
            batch = rows[start : start + UPSERT_BATCH_SIZE]
            payload = {
                "upsert_rows": [
                    {
                        "id": row.chunk.id,
                        "vector": np.asarray(row.vector, dtype=np.float32).tolist(),
                        **_encode_attributes(chunk_attributes(row.chunk)),
                    }
                    for row in batch
                ],
                "distance_metric": "cosine_distance",
                "schema": {"content": {"type": "string", "full_text_search": True}},
            }
            self._request("POST", self._namespace_url(namespace), payload)
            logger.debug("Upserted %d rows into %s", len(batch), namespace)

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
        body: dict[str, Any] = {"top_k": max(1, limit), "include_attributes": True}
        clauses = _filter_clauses(filters)
        if vector is not None:
            body["rank_by"] = ["vector", "ANN", np.asarray(vector, dtype=np.float32).tolist()]
        elif symbols:
            body["rank_by"] = ["content", "BM25", " ".join(symbols)]
            clauses.append(["symbolNames", "ContainsAny", list(symbols)])
        elif text:
            body["rank_by"] = ["content", "BM25", text]
        else:
            return []
        if clauses:
            body["filters"] = clauses[0] if len(clauses) == 1 else ["And", clauses]
        response = self._request("POST", f"{self._namespace_url(namespace)}/query", body)
        rows = _decode_rows(response.get("rows"), from_vector=vector is not None)
        if symbols:
            rows = [
                StoreRow(id=row.id, score=_symbol_score(row, symbols), chunk=row.chunk)
                for row in rows
            ]
            rows.sort(key=lambda item: (-item.score, item.id))
        return rows[:limit]

    def hybrid_query(
        self,
        namespace: str,
        *,
        vector: np.ndarray,
        text: str,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> HybridRows:
        top_k = min(limit * 2, 50)
        clauses = _filter_clauses(filters)
        queries: list[dict[str, Any]] = [
            {
                "rank_by": ["vector", "ANN", np.asarray(vector, dtype=np.float32).tolist()],
                "top_k": top_k,
                "include_attributes": True,
            },
            {"rank_by": ["content", "BM25", text], "top_k": top_k, "include_attributes": True},
        ]
        if clauses:
            combined = clauses[0] if len(clauses) == 1 else ["And", clauses]
            for item in queries:
                item["filters"] = combined
        response = self._request(
            "POST", f"{self._namespace_url(namespace)}/query", {"queries": queries}
        )
        results = response.get("results") or []
        vector_rows = _decode_rows(
            results[0].get("rows") if len(results) > 0 else None, from_vector=True
        )
        lexical_rows = _decode_rows(
            results[1].get("rows") if len(results) > 1 else None, from_vector=False
        )
        return HybridRows(vector_rows=vector_rows, lexical_rows=lexical_rows)

    def namespace_exists(self, namespace: str) -> bool:
        try:
            self._request("GET", f"{self._namespace_url(namespace)}/metadata")
        except StoreRequestError as exc:
            if exc.status in _MISSING_NAMESPACE_CODES:
                return False
            raise
        return True

    def delete_namespace(self, namespace: str) -> None:
        try:
            self._request("DELETE", self._namespace_url(namespace))
        except StoreRequestError as exc:
            if exc.status not in _MISSING_NAMESPACE_CODES:
                raise
            logger.debug("Namespace %s did not exist", namespace)

    def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None:
        ids = list(ids)
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            batch = ids[start : start + DELETE_BATCH_SIZE]
            self._request("POST", self._namespace_url(namespace), {"deletes": batch})

    def chunk_ids_for_file(self, namespace: str, file_path: str) -> list[str]:
        body = {
            "filters": ["filePath", "Eq", file_path],
            "rank_by": ["id", "asc"],
            "top_k": MAX_TOP_K,
            "include_attributes": False,
        }
        try:
            response = self._request("POST", f"{self._namespace_url(namespace)}/query", body)
        except StoreRequestError as exc:
            if exc.status in _MISSING_NAMESPACE_CODES:
                return []
            raise
        return [str(row["id"]) for row in response.get("rows") or () if "id" in row]

    def _namespace_url(self, namespace: str) -> str:
        return f"{self.base_url}/namespaces/{quote(namespace, safe='')}"

    def _request(
        self, method: str, url: str, payload: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urlrequest.Request(url, data=data, method=method)
        request.add_header("Authorization", f"Bearer {self.api_key}")
        if data is not None:
            request.add_header("Content-Type", "application/json")
        try:
            with urlrequest.urlopen(request, timeout=self.timeout) as response:
                body = response.read().decode("utf-8", errors="replace")
        except urlerror.HTTPError as exc:
            reason = f"HTTP {exc.code}"
            detail = exc.read().decode("utf-8", errors="replace").strip()
            if detail:
                reason = f"{reason}: {detail[:200]}"
            raise StoreRequestError(
                Messages.ERROR_STORE_REQUEST_FAILED.format(reason=reason), status=exc.code
            ) from exc
        except (urlerror.URLError, TimeoutError) as exc:
            raise StoreRequestError(
                Messages.ERROR_STORE_REQUEST_FAILED.format(reason=str(exc))
            ) from exc
        if not body.strip():
            return {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise StoreRequestError(
                Messages.ERROR_STORE_REQUEST_FAILED.format(reason="Invalid JSON response")
            ) from exc
        return parsed if isinstance(parsed, dict) else {}


def _encode_attributes(attributes: Mapping[str, Any]) -> dict[str, Any]:
    encoded = dict(attributes)
    for key in _JSON_ATTRIBUTES:
        if key in encoded:
            encoded[key] = json.dumps(encoded[key], ensure_ascii=False)
    return encoded


def _decode_attributes(raw: Mapping[str, Any]) -> dict[str, Any]:
    attributes = dict(raw.get("attributes") or raw)
    for key in _JSON_ATTRIBUTES:
        value = attributes.get(key)
        if isinstance(value, str):
            try:
                attributes[key] = json.loads(value)
            except json.JSONDecodeError:
                attributes[key] = []
    return attributes


def _decode_rows(raw_rows: object, *, from_vector: bool) -> list[StoreRow]:
    if not isinstance(raw_rows, list):
        return []
    rows: list[StoreRow] = []
    for raw in raw_rows:
        if not isinstance(raw, dict) or "id" not in raw:
            continue
        if from_vector:
            # cosine_distance ranges over [0, 2]
            score = 1.0 - float(raw.get("$dist") or 0.0)
        else:
            score = float(raw.get("$score") or raw.get("$dist") or 0.0)
        rows.append(decode_row(str(raw["id"]), score, _decode_attributes(raw)))
    return rows


def _filter_clauses(filters: QueryFilters | None) -> list[list[Any]]:
    if filters is None:
        return []
    clauses: list[list[Any]] = []
    if filters.file_types:
        globs = [["relativePath", "Glob", f"*{ext}"] for ext in filters.file_types]
        clauses.append(globs[0] if len(globs) == 1 else ["Or", globs])
    if filters.chunk_types:
        clauses.append(["chunkType", "In", list(filters.chunk_types)])
    return clauses


def _symbol_score(row: StoreRow, wanted: Sequence[str]) -> float:
    names = row.chunk.symbol_names() if row.chunk is not None else []
    if any(symbol in names for symbol in wanted):
        return 1.0
    lowered = [name.lower() for name in names]
    if any(symbol.lower() in name for symbol in wanted for name in lowered):
        return 0.7
    return 0.0
