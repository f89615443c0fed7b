from __future__ import annotations

import pytest

from ragchat.rag.embeddings import BatchingEmbedder, HashEmbedder
from ragchat.rag.errors import InputError, StoreError
from ragchat.rag.retrieval import Retriever
from ragchat.rag.types import Chunk, RetrievalMode, chunk_id_for
from ragchat.vectorstore.base import SearchFilters
from ragchat.vectorstore.inmemory import InMemoryVectorStore

pytestmark = pytest.mark.anyio

TEXTS = {
    "plan.pdf": [
        "The Northwind Standard plan covers preventive care and emergency services.",
        "Northwind Standard does not cover dental or vision exams.",
    ],
    "benefits.md": [
        "Northwind Health Plus adds vision coverage and mental health services.",
    ],
    "handbook.md": [
        "Employees accrue vacation days monthly and request leave through the portal.",
    ],
}


def _retriever() -> Retriever:
    hasher = HashEmbedder(dimension=64)
    store = InMemoryVectorStore(dimension=64)
    store.upsert(
        [
            Chunk(
                id=chunk_id_for(document_id, ordinal),
                document_id=document_id,
                ordinal=ordinal,
                text=text,
                vector=hasher.embed(text),
                metadata={"category": "hr" if document_id == "handbook.md" else "benefits"},
            )
            for document_id, texts in TEXTS.items()
            for ordinal, text in enumerate(texts)
        ]
    )
    return Retriever(store=store, embedder=BatchingEmbedder(backend=hasher))


@pytest.mark.parametrize("mode", ["text", "vector", "hybrid"])
async def test_results_are_bounded_and_sorted(mode: str) -> None:
    results = await _retriever().retrieve("Northwind Standard plan coverage", mode, top_k=2)

    assert 0 < len(results) <= 2
    scores = [result.score for result in results]
    assert scores == sorted(scores, reverse=True)


async def test_hybrid_prefers_chunks_strong_in_both_lists() -> None:
    results = await _retriever().retrieve(
        "What does the Northwind Standard plan cover?", RetrievalMode.HYBRID, top_k=3
    )

    assert results[0].chunk.document_id == "plan.pdf"
    assert all(0.0 <= result.score <= 1.0 for result in results)


async def test_no_match_is_an_empty_success() -> None:
    results = await _retriever().retrieve("zebra xylophone", RetrievalMode.TEXT, top_k=3)

    assert results == []


async def test_filters_are_forwarded() -> None:
    results = await _retriever().retrieve(
        "vacation leave",
        RetrievalMode.HYBRID,
        top_k=3,
        filters=SearchFilters(include_category="hr"),
    )

    assert {result.chunk.document_id for result in results} == {"handbook.md"}


@pytest.mark.parametrize("top_k", [0, -3])
async def test_top_k_below_one_is_rejected(top_k: int) -> None:
    with pytest.raises(InputError):
        await _retriever().retrieve("Northwind", RetrievalMode.TEXT, top_k=top_k)


async def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(InputError):
        await _retriever().retrieve("Northwind", "semantic", top_k=3)


async def test_store_failures_surface_as_store_error() -> None:
    class BrokenStore(InMemoryVectorStore):
        def query(self, *args, **kwargs):
            raise ConnectionError("backend down")

    hasher = HashEmbedder(dimension=8)
    retriever = Retriever(store=BrokenStore(dimension=8), embedder=BatchingEmbedder(backend=hasher))

    with pytest.raises(StoreError):
        await retriever.retrieve("Northwind", RetrievalMode.VECTOR, top_k=3)


async def test_hybrid_on_vector_only_store_uses_vector_search() -> None:
    hasher = HashEmbedder(dimension=64)
    store = InMemoryVectorStore(
        dimension=64, supported_modes=frozenset({RetrievalMode.VECTOR})
    )
    text = TEXTS["plan.pdf"][0]
    store.upsert(
        [
            Chunk(
                id=chunk_id_for("plan.pdf", 0),
                document_id="plan.pdf",
                ordinal=0,
                text=text,
                vector=hasher.embed(text),
            )
        ]
    )
    retriever = Retriever(store=store, embedder=BatchingEmbedder(backend=hasher))

    results = await retriever.retrieve("northwind plan", RetrievalMode.HYBRID, top_k=3)

    assert [result.chunk.id for result in results] == ["plan.pdf-0"]
