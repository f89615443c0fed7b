from __future__ import annotations

import json

import httpx
import pytest

from ragchat.app.dependencies import get_embedder, get_engine, get_vectorstore, reset_caches
from ragchat.app.main import app, status_for_error
from ragchat.rag.engine import ChatEngine
from ragchat.rag.errors import (
    Cancelled,
    EmbeddingError,
    FailureKind,
    GenerationFormatError,
    InputError,
    LLMError,
    StoreError,
)
from ragchat.rag.retrieval import Retriever
from ragchat.tests.fakes import ScriptedChatModel, answer_json

pytestmark = pytest.mark.anyio

POLICY = b"The Northwind Standard plan covers preventive care and emergency services."


def get_client(replies: list | None = None) -> tuple[httpx.AsyncClient, ScriptedChatModel]:
    reset_caches()
    app.dependency_overrides.clear()
    model = ScriptedChatModel(replies=list(replies or []))
    engine = ChatEngine(
        model=model,
        retriever=Retriever(store=get_vectorstore(), embedder=get_embedder()),
    )
    app.dependency_overrides[get_engine] = lambda: engine
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test"), model


async def _ingest(client: httpx.AsyncClient, name: str = "policy.txt", data: bytes = POLICY):
    return await client.post(
        "/ingest/files",
        files={"files": (name, data, "text/plain")},
        data={"category": "benefits"},
    )


async def test_health_endpoint() -> None:
    client, _ = get_client()
    async with client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["backend"] == "memory"
    assert response.headers["X-Request-ID"]


async def test_ingest_then_chat_returns_citations() -> None:
    client, model = get_client(
        ["Northwind Standard plan coverage", answer_json("It covers preventive care [policy.txt-0].")]
    )
    async with client:
        ingest_response = await _ingest(client)
        chat_response = await client.post(
            "/chat", json={"question": "What does the Northwind Standard plan cover?"}
        )

    assert ingest_response.status_code == 200
    ingested = ingest_response.json()
    assert ingested["ingested"] == 1
    assert ingested["documents"][0]["state"] == "complete"

    assert chat_response.status_code == 200
    payload = chat_response.json()
    assert payload["citations"] == ["policy.txt-0"]
    assert payload["search_query"] == "Northwind Standard plan coverage"
    assert payload["sources"][0]["id"] == "policy.txt-0"
    assert [turn["role"] for turn in payload["history"]] == ["user", "assistant"]
    assert payload["request_id"]
    assert "policy.txt-0: The Northwind Standard plan" in model.calls[1][-1].content


async def test_chat_stream_emits_ndjson_events() -> None:
    client, _ = get_client(["query", answer_json("Preventive care [policy.txt-0].")])
    async with client:
        await _ingest(client)
        response = await client.post("/chat/stream", json={"question": "What is covered?"})

    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert events[0]["type"] == "token"
    assert events[-1]["type"] == "result"
    assert events[-1]["result"]["citations"] == ["policy.txt-0"]


async def test_chat_stream_reports_errors_in_band() -> None:
    client, _ = get_client(["query", "not json", "still not json"])
    async with client:
        response = await client.post("/chat/stream", json={"question": "What is covered?"})

    events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert events[-1]["type"] == "error"
    assert events[-1]["status"] == 502
    assert events[-1]["error"] == "GenerationFormatError"


async def test_blank_question_is_a_bad_request() -> None:
    client, _ = get_client()
    async with client:
        response = await client.post("/chat", json={"question": "   "})
    assert response.status_code == 400
    assert response.json()["error"] == "InputError"


async def test_invalid_top_k_is_rejected_by_schema() -> None:
    client, _ = get_client()
    async with client:
        response = await client.post("/chat", json={"question": "Hi", "top_k": 0})
    assert response.status_code == 422


async def test_unparseable_answer_maps_to_bad_gateway() -> None:
    client, _ = get_client(["query", "nope", "nope again"])
    async with client:
        response = await client.post("/chat", json={"question": "What is covered?"})
    assert response.status_code == 502
    assert response.json()["stage"] == "generate"


async def test_unsupported_file_is_reported_as_failed() -> None:
    client, _ = get_client()
    async with client:
        response = await client.post(
            "/ingest/files", files={"files": ("scan.png", b"\x89PNG", "image/png")}
        )
    assert response.status_code == 200
    payload = response.json()
    assert payload["ingested"] == 0
    assert payload["documents"][0]["state"] == "failed"
    assert payload["documents"][0]["failed_stage"] == "chunked"


async def test_oversized_upload_is_rejected() -> None:
    client, _ = get_client()
    async with client:
        response = await _ingest(client, data=b"x" * 20000)
    assert response.status_code == 400


async def test_delete_and_stats() -> None:
    client, _ = get_client()
    async with client:
        await _ingest(client)
        stats_before = await client.get("/stats")
        delete_response = await client.post(
            "/ingest/delete", json={"document_ids": ["policy.txt"]}
        )
        stats_after = await client.get("/stats")

    assert stats_before.json()["chunk_count"] == 1
    assert delete_response.json() == {"deleted": 1}
    assert stats_after.json()["chunk_count"] == 0


async def test_metrics_endpoint_exposes_counters() -> None:
    client, _ = get_client()
    async with client:
        await client.get("/health")
        response = await client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (InputError("bad"), 400),
        (Cancelled("stop"), 499),
        (GenerationFormatError("bad json"), 502),
        (EmbeddingError("slow down", kind=FailureKind.RATE_LIMITED), 429),
        (LLMError("slow down", kind=FailureKind.RATE_LIMITED), 429),
        (LLMError("down"), 503),
        (StoreError("down"), 503),
    ],
)
def test_error_status_mapping(error, status: int) -> None:
    assert status_for_error(error) == status
