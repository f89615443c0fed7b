from __future__ import annotations

import asyncio

import pytest

from ragchat.rag.embeddings import BatchingEmbedder, HashEmbedder
from ragchat.rag.errors import Cancelled, EmbeddingError, FailureKind
from ragchat.tests.fakes import RecordingBackend

pytestmark = pytest.mark.anyio


async def _no_sleep(_: float) -> None:
    return None


def _embedder(backend: RecordingBackend, **kwargs) -> BatchingEmbedder:
    return BatchingEmbedder(backend=backend, sleep=_no_sleep, **kwargs)


async def test_output_order_matches_input_across_sub_batches() -> None:
    backend = RecordingBackend()
    embedder = _embedder(backend, max_batch_size=2, concurrency=3)
    texts = ["a", "bb", "ccc", "dddd", "eeeee"]

    vectors = await embedder.embed(texts)

    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert sorted(len(batch) for batch in backend.batches) == [1, 2, 2]


async def test_only_failed_sub_batch_is_retried() -> None:
    backend = RecordingBackend(failures={"ccc": 2})
    embedder = _embedder(backend, max_batch_size=2, concurrency=1)

    vectors = await embedder.embed(["a", "bb", "ccc", "dddd"])

    assert len(vectors) == 4
    assert backend.batches.count(["a", "bb"]) == 1
    assert backend.batches.count(["ccc", "dddd"]) == 3


async def test_invalid_errors_are_not_retried() -> None:
    backend = RecordingBackend(failures={"a": 5}, kind=FailureKind.INVALID)
    embedder = _embedder(backend, max_attempts=4)

    with pytest.raises(EmbeddingError) as excinfo:
        await embedder.embed(["a"])

    assert excinfo.value.kind is FailureKind.INVALID
    assert len(backend.batches) == 1


async def test_retries_stop_after_max_attempts() -> None:
    backend = RecordingBackend(failures={"a": 10}, kind=FailureKind.RATE_LIMITED)
    delays: list[float] = []

    async def _record(delay: float) -> None:
        delays.append(delay)

    embedder = BatchingEmbedder(
        backend=backend, max_attempts=3, backoff_seconds=0.5, sleep=_record
    )

    with pytest.raises(EmbeddingError) as excinfo:
        await embedder.embed(["a"])

    assert excinfo.value.kind is FailureKind.RATE_LIMITED
    assert len(backend.batches) == 3
    assert delays == [0.5, 1.0]


async def test_token_budget_splits_batches() -> None:
    embedder = _embedder(RecordingBackend(), max_batch_size=100, max_batch_tokens=5)

    batches = embedder.plan_batches(["one two three", "four five six", "seven"])

    assert batches == [[0], [1, 2]] or batches == [[0], [1], [2]]
    assert sorted(idx for batch in batches for idx in batch) == [0, 1, 2]


async def test_empty_input_makes_no_calls() -> None:
    backend = RecordingBackend()

    assert await _embedder(backend).embed([]) == []
    assert backend.batches == []


async def test_cancel_signal_aborts_embedding() -> None:
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(Cancelled):
        await _embedder(RecordingBackend()).embed(["a"], cancel=cancel)


async def test_hash_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashEmbedder(dimension=32)

    first, second = await embedder.embed_batch(["Northwind plan", "Northwind plan"])

    assert first == second
    assert len(first) == 32
    assert sum(value * value for value in first) == pytest.approx(1.0)
