from __future__ import annotations

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

from ragchat.app.settings import settings

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
CHAT_TURNS = Counter(
    "ragchat_chat_turns_total",
    "Chat turns by outcome",
    ["outcome"],
)
INGESTED_DOCUMENTS = Counter(
    "ragchat_ingested_documents_total",
    "Ingested documents by final state",
    ["state"],
)


def record_chat_turn(outcome: str) -> None:
    if settings.metrics_enabled:
        CHAT_TURNS.labels(outcome).inc()


def record_ingestion(state: str) -> None:
    if settings.metrics_enabled:
        INGESTED_DOCUMENTS.labels(state).inc()


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled:
        return await call_next(request)
    path = request.url.path
    if path == "/metrics":
        return await call_next(request)
    start = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        duration = time.monotonic() - start
        REQUEST_COUNT.labels(request.method, path, str(status)).inc()
        REQUEST_LATENCY.labels(request.method, path).observe(duration)


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
