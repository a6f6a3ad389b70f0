"""Reciprocal-rank fusion of vector and lexical result lists."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ..models import StoreRow

VECTOR_WEIGHT = 0.6
BM25_WEIGHT = 0.4
RRF_K = 10
RRF_SCALE = 100.0
MIN_SCORE = 0.01
OVERLAP_THRESHOLD = 0.7
RANK_BONUS = 0.2


@dataclass(slots=True)
class FusedRow:
    row: StoreRow
    score: float
    vector_rank: int | None = None
    lexical_rank: int | None = None


def _span(row: StoreRow) -> tuple[str, int, int] | None:
    chunk = row.chunk
    if chunk is None:
        return None
    return chunk.file_path, chunk.start_line, chunk.end_line


def spans_overlap(
    first: tuple[str, int, int],
    second: tuple[str, int, int],
    threshold: float = OVERLAP_THRESHOLD,
) -> bool:
    """Return True when two spans of one file share more than *threshold* of the shorter one."""

    if first[0] != second[0]:
        return False
    shared = min(first[2], second[2]) - max(first[1], second[1]) + 1
    if shared <= 0:
        return False
    shorter = min(first[2] - first[1] + 1, second[2] - second[1] + 1)
    return shared > threshold * shorter


def fuse_hybrid_results(
    vector_rows: Sequence[StoreRow],
    lexical_rows: Sequence[StoreRow],
    limit: int,
    vector_weight: float = VECTOR_WEIGHT,
    bm25_weight: float = BM25_WEIGHT,
    k: int = RRF_K,
    scale: float = RRF_SCALE,
    min_score: float = MIN_SCORE,
    overlap_threshold: float = OVERLAP_THRESHOLD,
) -> list[FusedRow]:
    """Fuse two ranked lists into one ordered, de-duplicated list of at most *limit* rows."""

    if limit <= 0:
        return []
    fused: dict[str, FusedRow] = {}
    for rank, row in enumerate(vector_rows):
        entry = fused.setdefault(row.id, FusedRow(row=row, score=0.0))
        if entry.vector_rank is None:
            entry.vector_rank = rank
            entry.score += vector_weight * scale / (k + rank + 1)
    for rank, row in enumerate(lexical_rows):
        entry = fused.setdefault(row.id, FusedRow(row=row, score=0.0))
        if entry.row.chunk is None and row.chunk is not None:
            entry.row = row
        if entry.lexical_rank is None:
            entry.lexical_rank = rank
            entry.score += bm25_weight * scale / (k + rank + 1)

    ranked = sorted(fused.values(), key=lambda item: item.score, reverse=True)
    ranked = [item for item in ranked if item.score >= min_score]
    if not ranked:
        return []
    top = ranked[0].score
    total = len(ranked)
    for index, item in enumerate(ranked):
        bonus = max(0.0, (total - index) / total * RANK_BONUS)
        item.score = min(1.0, item.score / top + bonus)

    seen_spans: set[tuple[str, int, int]] = set()
    deduped: list[FusedRow] = []
    for item in ranked:
        span = _span(item.row)
        if span is not None:
            if span in seen_spans:
                continue
            seen_spans.add(span)
        deduped.append(item)

    kept: list[FusedRow] = []
    kept_spans: list[tuple[str, int, int]] = []
    for item in deduped:
        span = _span(item.row)
        if span is not None and any(
            spans_overlap(span, other, overlap_threshold) for other in kept_spans
        ):
            continue
        kept.append(item)
        if span is not None:
            kept_spans.append(span)
        if len(kept) >= limit:
            break
    return kept
