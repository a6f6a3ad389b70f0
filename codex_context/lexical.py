"""BM25 tokenization and scoring shared by the local store and the BM25 reranker."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Sequence

from rank_bm25 import BM25L
from tokenizers.pre_tokenizers import BertPreTokenizer

BM25_K1 = 1.5
BM25_B = 0.75

_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


@lru_cache(maxsize=1)
def _pre_tokenizer() -> BertPreTokenizer:
    return BertPreTokenizer()


def bm25_tokenize(text: str) -> list[str]:
    """Lower-cased word pieces of *text*; identifiers also yield their camelCase parts."""
    normalized: list[str] = []
    for token, _ in _pre_tokenizer().pre_tokenize_str(text):
        cleaned = token.strip()
        if not cleaned or not any(ch.isalnum() for ch in cleaned):
            continue
        lowered = cleaned.lower()
        normalized.append(lowered)
        parts = _CAMEL_RE.findall(cleaned)
        if len(parts) > 1:
            normalized.extend(part.lower() for part in parts)
    return normalized


def bm25_scores(query_tokens: Sequence[str], documents: Sequence[Sequence[str]]) -> list[float]:
    if not documents or not query_tokens:
        return [0.0 for _ in documents]
    # BM25L avoids zero-idf scores on tiny candidate sets.
    bm25 = BM25L([list(doc) or [""] for doc in documents], k1=BM25_K1, b=BM25_B)
    return [float(score) for score in bm25.get_scores(list(query_tokens))]


def normalize_by_max(scores: Sequence[float]) -> list[float]:
    if not scores:
        return []
    max_score = max(scores)
    if max_score <= 0:
        return [0.0 for _ in scores]
    return [score / max_score for score in scores]
