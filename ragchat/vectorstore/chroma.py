from __future__ import annotations

"""Chroma-backed chunk store."""

from dataclasses import dataclass, field
from typing import Any, Sequence

from ragchat.rag.errors import InputError, StoreError
from ragchat.rag.types import Chunk, RetrievalMode, SearchResult
from ragchat.vectorstore.base import SearchFilters, lexical_results, rank_results


@dataclass
class ChromaVectorStore:
    """Persistent Chroma collection with cosine distance and metadata filters.

    Chroma has no lexical ranking; text queries score the filtered chunks
    with BM25 on the client, which suits small and medium collections.
    """
    dimension: int
    collection_name: str
    path: str | None = None
    backend: str = "chroma"
    native_hybrid: bool = False
    supported_modes: frozenset[RetrievalMode] = frozenset(
        {RetrievalMode.TEXT, RetrievalMode.VECTOR}
    )
    collection: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        import chromadb

        client = chromadb.PersistentClient(path=self.path) if self.path else chromadb.EphemeralClient()
        self.collection = client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        """Insert or overwrite chunks keyed by chunk id."""
        if not chunks:
            return 0
        try:
            self.collection.upsert(
                ids=[chunk.id for chunk in chunks],
                embeddings=[chunk.vector for chunk in chunks],
                documents=[chunk.text for chunk in chunks],
                metadatas=[self._to_metadata(chunk) for chunk in chunks],
            )
        except ValueError as exc:
            raise InputError(f"Chroma rejected chunks: {exc}", stage="index") from exc
        except Exception as exc:
            raise StoreError(f"Chroma upsert failed: {exc}", stage="index") from exc
        return len(chunks)

    def delete(self, document_id: str) -> int:
        """Delete every chunk belonging to a document."""
        where = {"document_id": document_id}
        try:
            existing = self.collection.get(where=where, include=[])
            ids = list(existing.get("ids") or [])
            if ids:
                self.collection.delete(ids=ids)
        except Exception as exc:
            raise StoreError(f"Chroma delete failed: {exc}", stage="delete") from exc
        return len(ids)

    def count(self, document_id: str) -> int:
        try:
            existing = self.collection.get(where={"document_id": document_id}, include=[])
        except Exception as exc:
            raise StoreError(f"Chroma count failed: {exc}", stage="index") from exc
        return len(existing.get("ids") or [])

    def query(
        self,
        query_text: str,
        query_vector: list[float] | None,
        mode: RetrievalMode,
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> list[SearchResult]:
        """Run a nearest-neighbour or BM25 query and return ranked results."""
        if mode not in self.supported_modes:
            raise InputError(f"Chroma backend cannot serve {mode.value} queries natively")
        if mode is RetrievalMode.TEXT:
            return rank_results(lexical_results(query_text, self._candidates(filters)), top_k)
        if query_vector is None:
            raise InputError("Vector queries require a query vector")
        try:
            response = self.collection.query(
                query_embeddings=[query_vector],
                n_results=top_k,
                where=self._build_where(filters),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise StoreError(f"Chroma query failed: {exc}", stage="retrieve") from exc
        ids = response["ids"][0]
        docs = response["documents"][0]
        metadatas = response["metadatas"][0]
        distances = response["distances"][0]
        results = [
            SearchResult(chunk=self._from_record(chunk_id, text, metadata), score=1.0 - distance)
            for chunk_id, text, metadata, distance in zip(ids, docs, metadatas, distances)
        ]
        return rank_results(results, top_k)

    def _candidates(self, filters: SearchFilters | None) -> list[Chunk]:
        try:
            response = self.collection.get(
                where=self._build_where(filters), include=["documents", "metadatas"]
            )
        except Exception as exc:
            raise StoreError(f"Chroma fetch failed: {exc}", stage="retrieve") from exc
        return [
            self._from_record(chunk_id, text, metadata)
            for chunk_id, text, metadata in zip(
                response.get("ids") or [],
                response.get("documents") or [],
                response.get("metadatas") or [],
            )
        ]

    def _to_metadata(self, chunk: Chunk) -> dict[str, Any]:
        """Flatten chunk metadata into Chroma's scalar-only metadata."""
        metadata: dict[str, Any] = {"document_id": chunk.document_id, "ordinal": chunk.ordinal}
        for key, value in chunk.metadata.items():
            if isinstance(value, (str, int, float, bool)):
                metadata[key] = value
        return metadata

    def _from_record(self, chunk_id: str, text: str, metadata: dict[str, Any] | None) -> Chunk:
        metadata = dict(metadata or {})
        document_id = str(metadata.pop("document_id", ""))
        ordinal = int(metadata.pop("ordinal", 0))
        return Chunk(
            id=chunk_id,
            document_id=document_id,
            ordinal=ordinal,
            text=text or "",
            metadata=metadata,
        )

    def _build_where(self, filters: SearchFilters | None) -> dict[str, Any] | None:
        """Build a Chroma where clause for search filters."""
        if filters is None or filters.is_empty():
            return None
        clauses: list[dict[str, Any]] = []
        if filters.include_category:
            clauses.append({"category": filters.include_category})
        if filters.exclude_category:
            clauses.append({"category": {"$ne": filters.exclude_category}})
        if filters.document_id:
            clauses.append({"document_id": filters.document_id})
        if filters.content_type:
            clauses.append({"content_type": filters.content_type})
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    def stats(self) -> dict[str, int | str]:
        return {
            "backend": self.backend,
            "chunk_count": int(self.collection.count()),
            "embedding_dimension": self.dimension,
            "collection": self.collection_name,
        }

    def health(self) -> dict[str, str | bool]:
        try:
            self.collection.count()
        except Exception as exc:
            return {"backend": self.backend, "ok": False, "detail": str(exc)}
        return {"backend": self.backend, "ok": True, "collection": self.collection_name}
