from __future__ import annotations

"""Document ingestion: extract, chunk, embed and index one document at a time."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from ragchat.loaders.chunking import chunk_pages
from ragchat.loaders.extract import extract_pages
from ragchat.rag.cancellation import check_cancelled, run_cancellable
from ragchat.rag.embeddings import BatchingEmbedder
from ragchat.rag.errors import RAGError, StoreError
from ragchat.rag.types import (
    Chunk,
    Document,
    IngestionOutcome,
    IngestionState,
    chunk_id_for,
)
from ragchat.vectorstore.base import VectorStore

logger = logging.getLogger(__name__)

Extractor = Callable[[bytes, str], list[tuple[int, str]]]


def _source_name(document_id: str) -> str:
    return document_id.replace("\\", "/").rsplit("/", 1)[-1] or document_id


@dataclass
class IngestionOrchestrator:
    """Drives a document through extraction, chunking, embedding and indexing.

    Ingestion of one document identity is serialized; different documents run
    concurrently. Chunks only become visible after the single upsert of the
    complete batch, so a failure at any stage leaves nothing partially indexed.
    """
    store: VectorStore
    embedder: BatchingEmbedder
    chunk_size: int = 1000
    chunk_overlap: int = 100
    extractor: Extractor = extract_pages
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, init=False, repr=False)
    _lock_users: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    @asynccontextmanager
    async def _serialized(self, document_id: str) -> AsyncIterator[None]:
        """Hold the document's lock; the lock is dropped once no task uses it."""
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._locks[document_id]

    async def ingest(
        self,
        document: Document,
        metadata: dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> IngestionOutcome:
        return await self.ingest_document(
            document.document_id,
            document.data,
            document.content_type,
            metadata=metadata,
            cancel=cancel,
        )

    async def ingest_document(
        self,
        document_id: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> IngestionOutcome:
        """Index a document, replacing any chunks from an earlier ingestion."""
        async with self._serialized(document_id):
            stage = IngestionState.CHUNKED
            try:
                check_cancelled(cancel, "extract")
                pages = await asyncio.to_thread(self.extractor, data, content_type)
                pieces = chunk_pages(pages, self.chunk_size, self.chunk_overlap)
                stage = IngestionState.EMBEDDED
                vectors = await self.embedder.embed([piece.text for piece in pieces], cancel=cancel)

                stage = IngestionState.INDEXED
                source_name = _source_name(document_id)
                extra = dict(metadata or {})
                chunks = [
                    Chunk(
                        id=chunk_id_for(document_id, piece.ordinal),
                        document_id=document_id,
                        ordinal=piece.ordinal,
                        text=piece.text,
                        vector=vector,
                        metadata={
                            **extra,
                            "page": piece.page,
                            "source_name": source_name,
                            "content_type": content_type,
                            "source_page": f"{source_name}#page={piece.page}",
                        },
                    )
                    for piece, vector in zip(pieces, vectors)
                ]
                await self._index(document_id, chunks, cancel)
            except RAGError as exc:
                return self._failed(document_id, stage, exc)
            except Exception as exc:
                if stage is IngestionState.INDEXED:
                    return self._failed(document_id, stage, StoreError(str(exc), stage="index"))
                raise

        logger.info(
            "ingestion_complete",
            extra={"document_id": document_id, "chunks": len(chunks)},
        )
        return IngestionOutcome(
            document_id=document_id,
            state=IngestionState.COMPLETE,
            chunk_count=len(chunks),
        )

    async def _index(
        self, document_id: str, chunks: list[Chunk], cancel: asyncio.Event | None
    ) -> None:
        previous = await run_cancellable(
            asyncio.to_thread(self.store.count, document_id), cancel, "index"
        )
        if previous > len(chunks):
            removed = await asyncio.to_thread(self.store.delete, document_id)
            logger.info(
                "ingestion_stale_chunks_removed",
                extra={"document_id": document_id, "removed": removed},
            )
        if chunks:
            check_cancelled(cancel, "index")
            await asyncio.to_thread(self.store.upsert, chunks)

    def _failed(
        self, document_id: str, stage: IngestionState, exc: Exception
    ) -> IngestionOutcome:
        logger.warning(
            "ingestion_failed",
            extra={
                "document_id": document_id,
                "stage": stage.value,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return IngestionOutcome(
            document_id=document_id,
            state=IngestionState.FAILED,
            failed_stage=stage,
            error=exc,
        )

    async def remove_document(self, document_id: str) -> int:
        """Delete every chunk of a document from the store."""
        async with self._serialized(document_id):
            try:
                removed = await asyncio.to_thread(self.store.delete, document_id)
            except RAGError:
                raise
            except Exception as exc:
                raise StoreError(str(exc), stage="delete") from exc
        logger.info("document_removed", extra={"document_id": document_id, "removed": removed})
        return removed
