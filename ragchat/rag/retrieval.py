from __future__ import annotations

"""Text, vector and hybrid retrieval over the active vector store."""

import asyncio
import logging
from dataclasses import dataclass

from ragchat.rag.cancellation import run_cancellable
from ragchat.rag.embeddings import BatchingEmbedder
from ragchat.rag.errors import InputError, RAGError, StoreError
from ragchat.rag.types import RetrievalMode, SearchResult
from ragchat.vectorstore.base import SearchFilters, VectorStore, merge_hybrid, rank_results

logger = logging.getLogger(__name__)


@dataclass
class Retriever:
    """Retrieval service bound to one vector store and embedder."""
    store: VectorStore
    embedder: BatchingEmbedder
    vector_weight: float = 0.5
    candidate_multiplier: int = 3

    async def retrieve(
        self,
        query_text: str,
        mode: RetrievalMode | str,
        top_k: int,
        filters: SearchFilters | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[SearchResult]:
        """Return at most top_k chunks ranked by descending relevance."""
        if top_k < 1:
            raise InputError("top_k must be at least 1", stage="retrieve")
        try:
            mode = RetrievalMode.parse(mode)
        except ValueError as exc:
            raise InputError(f"Unknown retrieval mode: {mode}", stage="retrieve") from exc
        if mode is RetrievalMode.HYBRID and RetrievalMode.TEXT not in self.store.supported_modes:
            logger.info("hybrid_served_as_vector", extra={"backend": self.store.backend})
            mode = RetrievalMode.VECTOR

        query_vector = None
        if mode is not RetrievalMode.TEXT:
            query_vector = await self.embedder.embed_query(query_text, cancel=cancel)

        if mode is RetrievalMode.HYBRID and not self.store.native_hybrid:
            candidates = top_k * max(1, self.candidate_multiplier)
            text_results = await self._query(
                query_text, None, RetrievalMode.TEXT, candidates, filters, cancel
            )
            vector_results = await self._query(
                query_text, query_vector, RetrievalMode.VECTOR, candidates, filters, cancel
            )
            results = merge_hybrid(
                text_results, vector_results, top_k, vector_weight=self.vector_weight
            )
        else:
            results = await self._query(query_text, query_vector, mode, top_k, filters, cancel)
            results = rank_results(results, top_k)

        logger.info(
            "retrieval_complete",
            extra={
                "backend": self.store.backend,
                "mode": mode.value,
                "results": len(results),
                "query_length": len(query_text),
            },
        )
        return results

    async def _query(
        self,
        query_text: str,
        query_vector: list[float] | None,
        mode: RetrievalMode,
        top_k: int,
        filters: SearchFilters | None,
        cancel: asyncio.Event | None,
    ) -> list[SearchResult]:
        call = asyncio.to_thread(
            self.store.query, query_text, query_vector, mode, top_k, filters
        )
        try:
            return await run_cancellable(call, cancel, "retrieve")
        except RAGError:
            raise
        except Exception as exc:
            raise StoreError(f"{self.store.backend} query failed: {exc}", stage="retrieve") from exc
