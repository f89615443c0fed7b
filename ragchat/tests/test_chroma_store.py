from __future__ import annotations

import uuid

import pytest

from ragchat.rag.types import Chunk, RetrievalMode, chunk_id_for
from ragchat.vectorstore.base import SearchFilters

pytest.importorskip("chromadb")

from ragchat.vectorstore.chroma import ChromaVectorStore  # noqa: E402


def _store() -> ChromaVectorStore:
    store = ChromaVectorStore(dimension=3, collection_name=f"test-{uuid.uuid4().hex[:12]}")
    store.upsert(
        [
            Chunk(
                id=chunk_id_for("plan.pdf", 0),
                document_id="plan.pdf",
                ordinal=0,
                text="Northwind Standard covers emergency care.",
                vector=[1.0, 0.0, 0.0],
                metadata={"category": "benefits", "page": 2, "tags": ["ignored"]},
            ),
            Chunk(
                id=chunk_id_for("handbook.md", 0),
                document_id="handbook.md",
                ordinal=0,
                text="Vacation requests need manager approval.",
                vector=[0.0, 1.0, 0.0],
                metadata={"category": "hr"},
            ),
        ]
    )
    return store


def test_vector_query_round_trips_chunk_fields() -> None:
    results = _store().query("", [1.0, 0.1, 0.0], RetrievalMode.VECTOR, top_k=1)

    assert len(results) == 1
    chunk = results[0].chunk
    assert chunk.id == "plan.pdf-0"
    assert chunk.document_id == "plan.pdf"
    assert chunk.metadata["page"] == 2
    assert "tags" not in chunk.metadata


def test_text_query_and_filters() -> None:
    store = _store()

    text = store.query("vacation approval", None, RetrievalMode.TEXT, top_k=5)
    filtered = store.query(
        "", [1.0, 0.0, 0.0], RetrievalMode.VECTOR, top_k=5,
        filters=SearchFilters(include_category="hr"),
    )

    assert [result.chunk.id for result in text] == ["handbook.md-0"]
    assert [result.chunk.id for result in filtered] == ["handbook.md-0"]


def test_delete_and_count_by_document() -> None:
    store = _store()

    assert store.count("plan.pdf") == 1
    assert store.delete("plan.pdf") == 1
    assert store.count("plan.pdf") == 0
    assert store.stats()["chunk_count"] == 1
