from __future__ import annotations

"""In-memory vector store for local testing and small datasets."""

import math
import threading
from dataclasses import dataclass, field
from typing import Sequence

from ragchat.rag.errors import InputError
from ragchat.rag.types import Chunk, RetrievalMode, SearchResult
from ragchat.vectorstore.base import SearchFilters, lexical_results, rank_results


@dataclass
class InMemoryVectorStore:
    """Chunk store with cosine vector search and BM25 lexical search.

    Lexical and vector rankings are served separately; hybrid queries are
    merged by the caller.
    """
    dimension: int
    chunks: dict[str, Chunk] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    backend: str = "memory"
    native_hybrid: bool = False
    supported_modes: frozenset[RetrievalMode] = frozenset(
        {RetrievalMode.TEXT, RetrievalMode.VECTOR}
    )

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        """Store chunks, overwriting any chunk with the same id."""
        for chunk in chunks:
            if len(chunk.vector) != self.dimension:
                raise InputError(
                    f"Chunk {chunk.id} has dimension {len(chunk.vector)}, expected {self.dimension}",
                    stage="index",
                )
        with self._lock:
            for chunk in chunks:
                self.chunks[chunk.id] = chunk
        return len(chunks)

    def delete(self, document_id: str) -> int:
        """Remove all chunks for a document."""
        with self._lock:
            doomed = [key for key, chunk in self.chunks.items() if chunk.document_id == document_id]
            for key in doomed:
                del self.chunks[key]
        return len(doomed)

    def count(self, document_id: str) -> int:
        return sum(1 for chunk in list(self.chunks.values()) if chunk.document_id == document_id)

    def query(
        self,
        query_text: str,
        query_vector: list[float] | None,
        mode: RetrievalMode,
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> list[SearchResult]:
        """Search stored chunks and apply optional filters."""
        if mode not in self.supported_modes:
            raise InputError(f"memory backend cannot serve {mode.value} queries natively")
        candidates = [
            chunk
            for chunk in list(self.chunks.values())
            if filters is None or filters.matches(chunk)
        ]
        if not candidates:
            return []
        if mode is RetrievalMode.TEXT:
            return rank_results(lexical_results(query_text, candidates), top_k)
        if query_vector is None:
            raise InputError("Vector queries require a query vector")
        scored = [
            SearchResult(chunk=chunk, score=self._cosine_similarity(query_vector, chunk.vector))
            for chunk in candidates
        ]
        return rank_results(scored, top_k)

    def _cosine_similarity(self, a: list[float], b: list[float]) -> float:
        """Compute cosine similarity between two vectors."""
        dot = sum(x * y for x, y in zip(a, b))
        norm_a = math.sqrt(sum(x * x for x in a))
        norm_b = math.sqrt(sum(y * y for y in b))
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        return dot / (norm_a * norm_b)

    def stats(self) -> dict[str, int | str]:
        """Return basic stats for the vector store."""
        return {
            "backend": self.backend,
            "document_count": len({chunk.document_id for chunk in self.chunks.values()}),
            "chunk_count": len(self.chunks),
            "embedding_dimension": self.dimension,
        }

    def health(self) -> dict[str, str | bool]:
        """Return health information for the vector store."""
        return {
            "backend": self.backend,
            "ok": True,
        }
