from __future__ import annotations

import asyncio

import pytest

from ragchat.rag.embeddings import BatchingEmbedder, HashEmbedder
from ragchat.rag.errors import EmbeddingError, ExtractionError, FailureKind
from ragchat.rag.ingestion import IngestionOrchestrator
from ragchat.rag.types import Document, IngestionState, RetrievalMode
from ragchat.tests.fakes import RecordingBackend
from ragchat.vectorstore.inmemory import InMemoryVectorStore

pytestmark = pytest.mark.anyio

LONG_TEXT = " ".join(
    f"Section {idx} of the Northwind employee handbook describes benefit rule {idx}."
    for idx in range(40)
).encode("utf-8")


async def _no_sleep(_: float) -> None:
    return None


def _orchestrator(backend=None, dimension: int = 32) -> IngestionOrchestrator:
    backend = backend or HashEmbedder(dimension=dimension)
    return IngestionOrchestrator(
        store=InMemoryVectorStore(dimension=backend.dimension),
        embedder=BatchingEmbedder(backend=backend, max_batch_size=4, sleep=_no_sleep),
        chunk_size=200,
        chunk_overlap=20,
    )


async def test_ingest_indexes_chunks_with_metadata() -> None:
    orchestrator = _orchestrator()

    outcome = await orchestrator.ingest_document(
        "docs/handbook.txt", LONG_TEXT, "text/plain", metadata={"category": "hr"}
    )

    assert outcome.state is IngestionState.COMPLETE
    assert outcome.chunk_count > 1
    store = orchestrator.store
    assert store.count("docs/handbook.txt") == outcome.chunk_count
    first = store.chunks["docs/handbook.txt-0"]
    assert first.metadata["source_name"] == "handbook.txt"
    assert first.metadata["page"] == 1
    assert first.metadata["source_page"] == "handbook.txt#page=1"
    assert first.metadata["content_type"] == "text/plain"
    assert first.metadata["category"] == "hr"


async def test_reingesting_shorter_document_leaves_no_orphans() -> None:
    orchestrator = _orchestrator()
    await orchestrator.ingest_document("handbook.txt", LONG_TEXT, "text/plain")

    outcome = await orchestrator.ingest_document(
        "handbook.txt", b"Only one short paragraph now.", "text/plain"
    )

    assert outcome.chunk_count == 1
    assert orchestrator.store.count("handbook.txt") == 1
    assert orchestrator.store.chunks["handbook.txt-0"].text == "Only one short paragraph now."


async def test_reingesting_same_document_does_not_duplicate() -> None:
    orchestrator = _orchestrator()
    document = Document(document_id="handbook.txt", data=LONG_TEXT, content_type="text/plain")

    first = await orchestrator.ingest(document)
    second = await orchestrator.ingest(document)

    assert first.chunk_count == second.chunk_count
    assert orchestrator.store.count("handbook.txt") == second.chunk_count


async def test_failed_sub_batch_is_retried_alone() -> None:
    backend = RecordingBackend()
    orchestrator = _orchestrator(backend)
    outcome = await orchestrator.ingest_document("handbook.txt", LONG_TEXT, "text/plain")
    assert outcome.state is IngestionState.COMPLETE
    ordered = sorted(orchestrator.store.chunks.values(), key=lambda chunk: chunk.ordinal)
    pieces = [chunk.text for chunk in ordered]
    assert len(pieces) > 4
    backend.batches.clear()
    backend.failures[pieces[4]] = 1

    again = await orchestrator.ingest_document("handbook.txt", LONG_TEXT, "text/plain")

    assert again.state is IngestionState.COMPLETE
    first_texts = [batch[0] for batch in backend.batches]
    assert first_texts.count(pieces[4]) == 2
    assert first_texts.count(pieces[0]) == 1


async def test_embedding_failure_leaves_nothing_indexed() -> None:
    backend = RecordingBackend(kind=FailureKind.INVALID)
    orchestrator = _orchestrator(backend)
    backend.failures["Broken document."] = 1

    outcome = await orchestrator.ingest_document("broken.txt", b"Broken document.", "text/plain")

    assert outcome.state is IngestionState.FAILED
    assert outcome.failed_stage is IngestionState.EMBEDDED
    assert isinstance(outcome.error, EmbeddingError)
    assert orchestrator.store.count("broken.txt") == 0


async def test_unsupported_content_type_fails_at_extraction() -> None:
    outcome = await _orchestrator().ingest_document("image.bin", b"\x00\x01", "image/png")

    assert outcome.state is IngestionState.FAILED
    assert outcome.failed_stage is IngestionState.CHUNKED
    assert isinstance(outcome.error, ExtractionError)


async def test_concurrent_ingestion_of_same_document_is_serialized() -> None:
    orchestrator = _orchestrator()
    active = 0
    peak = 0
    original = orchestrator.extractor

    def tracking_extractor(data: bytes, content_type: str):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        try:
            return original(data, content_type)
        finally:
            active -= 1

    orchestrator.extractor = tracking_extractor
    outcomes = await asyncio.gather(
        *[orchestrator.ingest_document("same.txt", LONG_TEXT, "text/plain") for _ in range(3)]
    )

    assert all(outcome.state is IngestionState.COMPLETE for outcome in outcomes)
    assert peak == 1
    assert orchestrator.store.count("same.txt") == outcomes[0].chunk_count


async def test_removed_document_is_not_retrievable() -> None:
    orchestrator = _orchestrator()
    await orchestrator.ingest_document("handbook.txt", LONG_TEXT, "text/plain")

    removed = await orchestrator.remove_document("handbook.txt")

    assert removed > 0
    results = orchestrator.store.query("Northwind", None, RetrievalMode.TEXT, top_k=5)
    assert results == []


async def test_document_locks_are_released_after_use() -> None:
    orchestrator = _orchestrator()

    await asyncio.gather(
        orchestrator.ingest_document("a.txt", LONG_TEXT, "text/plain"),
        orchestrator.ingest_document("a.txt", LONG_TEXT, "text/plain"),
        orchestrator.ingest_document("b.txt", LONG_TEXT, "text/plain"),
        orchestrator.ingest_document("scan.png", b"\x89PNG", "image/png"),
    )
    await orchestrator.remove_document("b.txt")

    assert orchestrator._locks == {}
    assert orchestrator._lock_users == {}
