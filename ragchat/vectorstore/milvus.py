from __future__ import annotations

"""Milvus-backed chunk store with native hybrid (dense + BM25) search."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from ragchat.rag.errors import EmbeddingConfigError, InputError, StoreError
from ragchat.rag.types import Chunk, RetrievalMode, SearchResult
from ragchat.vectorstore.base import SearchFilters, rank_results

logger = logging.getLogger(__name__)

_OUTPUT_FIELDS = ["id", "document_id", "ordinal", "content", "metadata"]


@dataclass
class MilvusConfig:
    """Configuration for Milvus connection and indexing."""
    uri: str
    token: str | None
    collection: str
    consistency: str = "Strong"
    index_type: str = "HNSW"
    metric_type: str = "COSINE"
    nlist: int = 1024
    nprobe: int = 10
    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef: int = 64
    sparse_index_algo: str = "DAAT_MAXSCORE"
    hybrid_search: bool = True
    max_content_length: int = 65535


def _quote(value: str) -> str:
    """Quote a string literal for a Milvus boolean expression."""
    return json.dumps(value, ensure_ascii=False)


@dataclass
class MilvusVectorStore:
    """Milvus collection with dense and sparse (BM25) fields."""
    dimension: int
    config: MilvusConfig
    backend: str = "milvus"
    collection: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Connect to Milvus and ensure collection exists."""
        from pymilvus import connections
        from pymilvus.exceptions import MilvusException

        if self.dimension <= 0:
            raise EmbeddingConfigError(
                "Embedding dimension must be set before initializing MilvusVectorStore"
            )
        try:
            connections.connect(alias="default", uri=self.config.uri, token=self.config.token)
            self.ensure_collection()
        except MilvusException as exc:
            raise StoreError(f"Milvus unavailable: {exc}", stage="connect") from exc

    @property
    def native_hybrid(self) -> bool:
        return self.config.hybrid_search

    @property
    def supported_modes(self) -> frozenset[RetrievalMode]:
        if self.config.hybrid_search:
            return frozenset(RetrievalMode)
        return frozenset({RetrievalMode.VECTOR})

    def ensure_collection(self) -> None:
        """Create collection schema and indexes when missing."""
        from pymilvus import (
            Collection,
            CollectionSchema,
            DataType,
            FieldSchema,
            Function,
            FunctionType,
            utility,
        )

        if utility.has_collection(self.config.collection):
            self.collection = Collection(
                self.config.collection, consistency_level=self.config.consistency
            )
            existing_dim = self._existing_embedding_dim()
            if existing_dim is not None and existing_dim != self.dimension:
                raise EmbeddingConfigError(
                    "Milvus collection embedding dimension mismatch: "
                    f"{existing_dim} (collection) vs {self.dimension} (embedder). "
                    "Update EMBEDDING_DIMENSION or use a new MILVUS_COLLECTION."
                )
            return

        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=1024),
            FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=1024),
            FieldSchema(name="ordinal", dtype=DataType.INT64),
            FieldSchema(
                name="content",
                dtype=DataType.VARCHAR,
                max_length=self.config.max_content_length,
                enable_analyzer=True,
            ),
            FieldSchema(name="metadata", dtype=DataType.JSON),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.dimension),
        ]
        functions = []
        if self.config.hybrid_search:
            fields.append(FieldSchema(name="text_sparse", dtype=DataType.SPARSE_FLOAT_VECTOR))
            functions.append(
                Function(
                    name="content_bm25",
                    input_field_names=["content"],
                    output_field_names=["text_sparse"],
                    function_type=FunctionType.BM25,
                )
            )
        schema = CollectionSchema(
            fields=fields,
            description="Document chunks",
            functions=functions,
        )
        self.collection = Collection(
            self.config.collection,
            schema,
            consistency_level=self.config.consistency,
        )
        self._create_index()
        logger.info(
            "milvus_collection_created",
            extra={"collection": self.config.collection, "hybrid": self.config.hybrid_search},
        )

    def _dense_params(self) -> dict[str, Any]:
        if self.config.index_type.upper() == "HNSW":
            return {"metric_type": self.config.metric_type, "params": {"ef": self.config.hnsw_ef}}
        return {"metric_type": self.config.metric_type, "params": {"nprobe": self.config.nprobe}}

    def _create_index(self) -> None:
        """Create dense, sparse and scalar indexes on a new collection."""
        index_params = {
            "index_type": self.config.index_type,
            "metric_type": self.config.metric_type,
            "params": {"nlist": self.config.nlist},
        }
        if self.config.index_type.upper() == "HNSW":
            index_params = {
                "index_type": "HNSW",
                "metric_type": self.config.metric_type,
                "params": {
                    "M": self.config.hnsw_m,
                    "efConstruction": self.config.hnsw_ef_construction,
                },
            }
        self.collection.create_index(field_name="embedding", index_params=index_params)
        self.collection.create_index(field_name="document_id", index_name="document_id_idx")
        if self.config.hybrid_search:
            self.collection.create_index(
                field_name="text_sparse",
                index_params={
                    "index_type": "SPARSE_INVERTED_INDEX",
                    "metric_type": "BM25",
                    "params": {"inverted_index_algo": self.config.sparse_index_algo},
                },
            )

    def _existing_embedding_dim(self) -> int | None:
        """Read embedding dimension from existing collection schema."""
        for schema_field in self.collection.schema.fields:
            if schema_field.name != "embedding":
                continue
            params = getattr(schema_field, "params", None) or {}
            dim = params.get("dim") if isinstance(params, dict) else None
            if dim is None:
                dim = getattr(schema_field, "dim", None)
            return int(dim) if dim is not None else None
        return None

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        """Insert or overwrite chunks keyed by chunk id."""
        from pymilvus.exceptions import MilvusException

        rows = [
            {
                "id": chunk.id,
                "document_id": chunk.document_id,
                "ordinal": chunk.ordinal,
                "content": chunk.text[: self.config.max_content_length],
                "metadata": chunk.metadata,
                "embedding": chunk.vector,
            }
            for chunk in chunks
        ]
        if not rows:
            return 0
        try:
            self.collection.upsert(rows)
            self.collection.flush()
        except MilvusException as exc:
            raise StoreError(f"Milvus upsert failed: {exc}", stage="index") from exc
        return len(rows)

    def delete(self, document_id: str) -> int:
        """Delete every chunk belonging to a document."""
        from pymilvus.exceptions import MilvusException

        try:
            result = self.collection.delete(expr=f"document_id == {_quote(document_id)}")
            self.collection.flush()
        except MilvusException as exc:
            raise StoreError(f"Milvus delete failed: {exc}", stage="delete") from exc
        return int(getattr(result, "delete_count", 0) or 0)

    def count(self, document_id: str) -> int:
        from pymilvus.exceptions import MilvusException

        try:
            self.collection.load()
            rows = self.collection.query(
                expr=f"document_id == {_quote(document_id)}",
                output_fields=["count(*)"],
            )
        except MilvusException as exc:
            raise StoreError(f"Milvus count failed: {exc}", stage="index") from exc
        return int(rows[0]["count(*)"]) if rows else 0

    def query(
        self,
        query_text: str,
        query_vector: list[float] | None,
        mode: RetrievalMode,
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> list[SearchResult]:
        """Search using BM25, dense or hybrid (dense + BM25) retrieval."""
        from pymilvus import AnnSearchRequest, RRFRanker
        from pymilvus.exceptions import MilvusException

        if mode not in self.supported_modes:
            raise InputError(f"Milvus collection is not configured for {mode.value} search")
        if mode is not RetrievalMode.TEXT and query_vector is None:
            raise InputError("Vector and hybrid queries require a query vector")
        expr = self._build_filter_expr(filters) or None
        try:
            self.collection.load()
            if mode is RetrievalMode.HYBRID:
                requests = [
                    AnnSearchRequest(
                        data=[query_vector],
                        anns_field="embedding",
                        param=self._dense_params(),
                        limit=top_k,
                        expr=expr,
                    ),
                    AnnSearchRequest(
                        data=[query_text],
                        anns_field="text_sparse",
                        param={"metric_type": "BM25"},
                        limit=top_k,
                        expr=expr,
                    ),
                ]
                hits = self.collection.hybrid_search(
                    requests, RRFRanker(), limit=top_k, output_fields=_OUTPUT_FIELDS
                )
            elif mode is RetrievalMode.TEXT:
                hits = self.collection.search(
                    data=[query_text],
                    anns_field="text_sparse",
                    param={"metric_type": "BM25"},
                    limit=top_k,
                    expr=expr,
                    output_fields=_OUTPUT_FIELDS,
                )
            else:
                hits = self.collection.search(
                    data=[query_vector],
                    anns_field="embedding",
                    param=self._dense_params(),
                    limit=top_k,
                    expr=expr,
                    output_fields=_OUTPUT_FIELDS,
                )
        except MilvusException as exc:
            raise StoreError(f"Milvus search failed: {exc}", stage="retrieve") from exc

        results: list[SearchResult] = []
        for hit in hits[0]:
            entity = hit.entity
            chunk = Chunk(
                id=entity.get("id"),
                document_id=entity.get("document_id"),
                ordinal=int(entity.get("ordinal") or 0),
                text=entity.get("content") or "",
                metadata=self._deserialize_metadata(entity.get("metadata")),
            )
            results.append(SearchResult(chunk=chunk, score=float(hit.score)))
        return rank_results(results, top_k)

    def _deserialize_metadata(self, value: Any) -> dict[str, Any]:
        """Deserialize metadata from storage."""
        if value is None:
            return {}
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {"raw": value}
        return {"raw": value}

    def _build_filter_expr(self, filters: SearchFilters | None) -> str:
        """Build a Milvus boolean expression for search filters."""
        if filters is None or filters.is_empty():
            return ""
        clauses: list[str] = []
        if filters.include_category:
            clauses.append(f'metadata["category"] == {_quote(filters.include_category)}')
        if filters.exclude_category:
            clauses.append(
                f'(not exists metadata["category"] or '
                f'metadata["category"] != {_quote(filters.exclude_category)})'
            )
        if filters.document_id:
            clauses.append(f"document_id == {_quote(filters.document_id)}")
        if filters.content_type:
            clauses.append(f'metadata["content_type"] == {_quote(filters.content_type)}')
        return " and ".join(clauses)

    def stats(self) -> dict[str, int | str]:
        """Return collection stats."""
        return {
            "backend": self.backend,
            "chunk_count": int(self.collection.num_entities),
            "embedding_dimension": self.dimension,
            "collection": self.config.collection,
        }

    def health(self) -> dict[str, str | bool]:
        """Return collection health info."""
        from pymilvus.exceptions import MilvusException

        try:
            _ = self.collection.num_entities
        except MilvusException as exc:
            return {"backend": self.backend, "ok": False, "detail": str(exc)}
        return {"backend": self.backend, "ok": True, "collection": self.config.collection}
