from __future__ import annotations

"""Vector store capability protocol and shared ranking helpers."""

import re
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from rank_bm25 import BM25Plus

from ragchat.rag.types import Chunk, RetrievalMode, SearchResult


@dataclass(frozen=True)
class SearchFilters:
    """Metadata filters applied by every backend."""
    include_category: str | None = None
    exclude_category: str | None = None
    document_id: str | None = None
    content_type: str | None = None

    def is_empty(self) -> bool:
        return not any(
            (self.include_category, self.exclude_category, self.document_id, self.content_type)
        )

    def matches(self, chunk: Chunk) -> bool:
        """Return True when the chunk passes every filter."""
        category = chunk.metadata.get("category")
        if self.include_category and category != self.include_category:
            return False
        if self.exclude_category and category == self.exclude_category:
            return False
        if self.document_id and chunk.document_id != self.document_id:
            return False
        if self.content_type and chunk.metadata.get("content_type") != self.content_type:
            return False
        return True


class VectorStore(Protocol):
    """Capabilities shared by all vector store backends."""
    backend: str
    native_hybrid: bool
    supported_modes: frozenset[RetrievalMode]

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        """Insert or overwrite chunks by id."""
        raise NotImplementedError

    def delete(self, document_id: str) -> int:
        """Remove every chunk of a document."""
        raise NotImplementedError

    def count(self, document_id: str) -> int:
        """Return how many chunks are stored for a document."""
        raise NotImplementedError

    def query(
        self,
        query_text: str,
        query_vector: list[float] | None,
        mode: RetrievalMode,
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> list[SearchResult]:
        """Return at most top_k results ordered by descending score."""
        raise NotImplementedError

    def stats(self) -> dict[str, Any]:
        raise NotImplementedError

    def health(self) -> dict[str, Any]:
        raise NotImplementedError


_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def lexical_results(query_text: str, candidates: Sequence[Chunk]) -> list[SearchResult]:
    """Score candidates with BM25, keeping only chunks sharing a query term."""
    query_tokens = tokenize(query_text)
    if not query_tokens or not candidates:
        return []
    corpus = [tokenize(chunk.text) for chunk in candidates]
    scores = BM25Plus(corpus).get_scores(query_tokens)
    wanted = set(query_tokens)
    return [
        SearchResult(chunk=chunk, score=float(score))
        for chunk, tokens, score in zip(candidates, corpus, scores)
        if wanted.intersection(tokens)
    ]


def rank_results(results: Sequence[SearchResult], top_k: int) -> list[SearchResult]:
    """Sort by descending score, breaking ties by ascending chunk id."""
    ordered = sorted(results, key=lambda result: (-result.score, result.chunk.id))
    return ordered[: max(0, top_k)]


def _min_max(results: Sequence[SearchResult]) -> dict[str, float]:
    if not results:
        return {}
    scores = [result.score for result in results]
    low, high = min(scores), max(scores)
    if high == low:
        return {result.chunk.id: 1.0 for result in results}
    return {result.chunk.id: (result.score - low) / (high - low) for result in results}


def merge_hybrid(
    text_results: Sequence[SearchResult],
    vector_results: Sequence[SearchResult],
    top_k: int,
    vector_weight: float = 0.5,
) -> list[SearchResult]:
    """Combine lexical and vector rankings client-side.

    Each list is min-max normalized to [0, 1]; a chunk missing from one list
    scores 0 there. The combined score is
    ``vector_weight * vector + (1 - vector_weight) * text``.
    """
    weight = min(1.0, max(0.0, vector_weight))
    text_scores = _min_max(text_results)
    vector_scores = _min_max(vector_results)
    chunks: dict[str, Chunk] = {}
    for result in list(text_results) + list(vector_results):
        chunks.setdefault(result.chunk.id, result.chunk)
    merged = [
        SearchResult(
            chunk=chunk,
            score=weight * vector_scores.get(chunk_id, 0.0)
            + (1.0 - weight) * text_scores.get(chunk_id, 0.0),
        )
        for chunk_id, chunk in chunks.items()
    ]
    return rank_results(merged, top_k)
