from __future__ import annotations

import pytest

from ragchat.rag.errors import InputError
from ragchat.rag.types import Chunk, RetrievalMode, SearchResult, chunk_id_for
from ragchat.vectorstore.base import SearchFilters, merge_hybrid, rank_results
from ragchat.vectorstore.inmemory import InMemoryVectorStore


def _chunk(document_id: str, ordinal: int, text: str, vector: list[float], **metadata) -> Chunk:
    return Chunk(
        id=chunk_id_for(document_id, ordinal),
        document_id=document_id,
        ordinal=ordinal,
        text=text,
        vector=vector,
        metadata=metadata,
    )


def _store() -> InMemoryVectorStore:
    store = InMemoryVectorStore(dimension=3)
    store.upsert(
        [
            _chunk("plan.pdf", 0, "Northwind Standard covers emergency care.", [1.0, 0.0, 0.0], category="benefits"),
            _chunk("plan.pdf", 1, "Dental coverage is not included.", [0.0, 1.0, 0.0], category="benefits"),
            _chunk("handbook.md", 0, "Vacation requests need manager approval.", [0.0, 0.0, 1.0], category="hr"),
        ]
    )
    return store


def test_upsert_is_idempotent_per_chunk_id() -> None:
    store = _store()

    store.upsert([_chunk("plan.pdf", 0, "Updated emergency text.", [1.0, 0.0, 0.0])])

    assert store.count("plan.pdf") == 2
    assert store.chunks["plan.pdf-0"].text == "Updated emergency text."
    assert store.stats()["chunk_count"] == 3


def test_delete_removes_only_that_document() -> None:
    store = _store()

    assert store.delete("plan.pdf") == 2
    assert store.count("plan.pdf") == 0
    assert store.count("handbook.md") == 1
    assert store.delete("plan.pdf") == 0


def test_vector_query_ranks_by_cosine() -> None:
    results = _store().query("", [0.9, 0.1, 0.0], RetrievalMode.VECTOR, top_k=2)

    assert [result.chunk.id for result in results] == ["plan.pdf-0", "plan.pdf-1"]
    assert results[0].score > results[1].score


def test_text_query_returns_only_matching_chunks() -> None:
    results = _store().query("dental coverage", None, RetrievalMode.TEXT, top_k=5)

    assert [result.chunk.id for result in results] == ["plan.pdf-1"]


def test_filters_apply_to_queries() -> None:
    store = _store()
    filters = SearchFilters(exclude_category="benefits")

    results = store.query("", [1.0, 0.0, 0.0], RetrievalMode.VECTOR, top_k=5, filters=filters)

    assert [result.chunk.id for result in results] == ["handbook.md-0"]


def test_dimension_mismatch_is_rejected() -> None:
    with pytest.raises(InputError):
        _store().upsert([_chunk("bad", 0, "text", [1.0])])


def test_hybrid_is_not_served_natively() -> None:
    with pytest.raises(InputError):
        _store().query("care", [1.0, 0.0, 0.0], RetrievalMode.HYBRID, top_k=3)


def test_ties_break_by_chunk_id() -> None:
    chunk_b = _chunk("b", 0, "b", [1.0, 0.0, 0.0])
    chunk_a = _chunk("a", 0, "a", [1.0, 0.0, 0.0])

    ranked = rank_results([SearchResult(chunk_b, 0.5), SearchResult(chunk_a, 0.5)], top_k=2)

    assert [result.chunk.id for result in ranked] == ["a-0", "b-0"]


def test_merge_hybrid_normalizes_and_weights() -> None:
    one = _chunk("doc", 1, "one", [1.0, 0.0, 0.0])
    two = _chunk("doc", 2, "two", [1.0, 0.0, 0.0])
    three = _chunk("doc", 3, "three", [1.0, 0.0, 0.0])
    text = [SearchResult(one, 12.0), SearchResult(two, 2.0)]
    vector = [SearchResult(two, 0.9), SearchResult(three, 0.1)]

    merged = merge_hybrid(text, vector, top_k=3, vector_weight=0.5)

    scores = {result.chunk.id: result.score for result in merged}
    assert scores == pytest.approx({"doc-1": 0.5, "doc-2": 0.5, "doc-3": 0.0})
    assert [result.chunk.id for result in merged] == ["doc-1", "doc-2", "doc-3"]
