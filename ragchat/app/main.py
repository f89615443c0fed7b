from __future__ import annotations

"""FastAPI application entrypoint for the grounded chat service."""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict
from typing import AsyncIterator

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from ragchat.app.dependencies import (
    get_engine,
    get_image_ingestor,
    get_image_vectorstore,
    get_ingestor,
    get_vectorstore,
)
from ragchat.app.metrics import (
    metrics_middleware,
    metrics_response,
    record_chat_turn,
    record_ingestion,
)
from ragchat.app.schemas import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    DeleteDocumentRequest,
    DeleteDocumentResponse,
    HealthResponse,
    IngestedDocument,
    IngestResponse,
    SourceItem,
    StatsResponse,
)
from ragchat.app.settings import settings
from ragchat.loaders.extract import guess_content_type
from ragchat.rag.engine import ChatEngine
from ragchat.rag.errors import (
    Cancelled,
    EmbeddingError,
    FailureKind,
    GenerationFormatError,
    InputError,
    LLMError,
    RAGError,
)
from ragchat.rag.ingestion import IngestionOrchestrator
from ragchat.rag.types import AnswerResult, ConversationTurn
from ragchat.vectorstore.base import SearchFilters, VectorStore

logger = logging.getLogger(__name__)

app = FastAPI(title="RAG Chat", version="0.1.0")

DISCONNECT_POLL_SECONDS = 0.5


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def status_for_error(exc: RAGError) -> int:
    """Map a typed pipeline error to an HTTP status code."""
    if isinstance(exc, InputError):
        return 400
    if isinstance(exc, Cancelled):
        return 499
    if isinstance(exc, GenerationFormatError):
        return 502
    if isinstance(exc, (EmbeddingError, LLMError)) and exc.kind is FailureKind.RATE_LIMITED:
        return 429
    return 503


def _error_body(exc: RAGError, request_id: str | None) -> dict[str, str | None]:
    return {
        "detail": str(exc),
        "error": type(exc).__name__,
        "stage": exc.stage,
        "request_id": request_id,
    }


@app.exception_handler(RAGError)
async def handle_rag_error(request: Request, exc: RAGError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    status = status_for_error(exc)
    log = logger.warning if status < 500 else logger.error
    log(
        "request_failed",
        extra={
            "request_id": request_id,
            "error_type": type(exc).__name__,
            "stage": exc.stage,
            "status": status,
        },
    )
    return JSONResponse(status_code=status, content=_error_body(exc, request_id))


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health", response_model=HealthResponse)
async def health(store: VectorStore = Depends(get_vectorstore)) -> HealthResponse:
    """Health probe including the vector store."""
    report = await asyncio.to_thread(store.health)
    status = "ok" if report.get("ok") else "degraded"
    return HealthResponse(
        status=status,
        backend=str(report.get("backend")),
        ok=bool(report.get("ok")),
        detail=report.get("detail"),
    )


@app.get("/stats", response_model=StatsResponse)
async def stats(store: VectorStore = Depends(get_vectorstore)) -> StatsResponse:
    """Return vector store stats."""
    payload = dict(await asyncio.to_thread(store.stats))
    if settings.vision_enabled:
        payload["images"] = await asyncio.to_thread(get_image_vectorstore().stats)
    return StatsResponse(**payload)


async def _read_upload_bytes(upload: UploadFile, max_bytes: int | None) -> bytes:
    """Stream upload bytes with a hard size limit."""
    if not max_bytes or max_bytes <= 0:
        return await upload.read()
    buffer = bytearray()
    while True:
        chunk = await upload.read(65536)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"File exceeds maximum size of {max_bytes} bytes",
            )
    return bytes(buffer)


def _ingestor_for(collection: str) -> IngestionOrchestrator:
    if collection == "images":
        return get_image_ingestor()
    if collection == "text":
        return get_ingestor()
    raise InputError(f"Unknown collection: {collection}", stage="input")


@app.post("/ingest/files", response_model=IngestResponse)
async def ingest_files(
    http_request: Request,
    files: list[UploadFile] = File(...),
    collection: str = Form("text"),
    category: str | None = Form(None),
) -> IngestResponse:
    """Ingest uploaded files, replacing earlier versions with the same name."""
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")
    ingestor = _ingestor_for(collection)
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    metadata = {"category": category} if category else None
    documents: list[IngestedDocument] = []
    for idx, upload in enumerate(files, start=1):
        document_id = upload.filename or f"upload-{idx}"
        data = await _read_upload_bytes(upload, settings.file_max_bytes)
        content_type = guess_content_type(document_id, upload.content_type)
        outcome = await ingestor.ingest_document(
            document_id, data, content_type, metadata=metadata
        )
        record_ingestion(outcome.state.value)
        documents.append(
            IngestedDocument(
                document_id=outcome.document_id,
                state=outcome.state.value,
                chunk_count=outcome.chunk_count,
                failed_stage=outcome.failed_stage.value if outcome.failed_stage else None,
                error=str(outcome.error) if outcome.error else None,
            )
        )
    ingested = sum(1 for document in documents if document.failed_stage is None)
    logger.info(
        "file_ingest_completed",
        extra={"request_id": request_id, "files": len(files), "ingested": ingested},
    )
    return IngestResponse(ingested=ingested, documents=documents)


@app.post("/ingest/delete", response_model=DeleteDocumentResponse)
async def delete_documents(request: DeleteDocumentRequest) -> DeleteDocumentResponse:
    """Remove every chunk of the given documents."""
    ingestor = _ingestor_for(request.collection)
    deleted = 0
    for document_id in request.document_ids:
        deleted += await ingestor.remove_document(document_id)
    return DeleteDocumentResponse(deleted=deleted)


def _history_from(messages: list[ChatMessage]) -> tuple[ConversationTurn, ...]:
    return tuple(ConversationTurn(role=msg.role, content=msg.content) for msg in messages)


def _filters_from(request: ChatRequest) -> SearchFilters | None:
    if request.filters is None:
        return None
    return SearchFilters(**request.filters.model_dump())


def _engine_kwargs(request: ChatRequest) -> dict[str, object]:
    return {
        "question": request.question,
        "history": _history_from(request.history),
        "mode": request.mode,
        "top_k": request.top_k,
        "enable_follow_up": (
            settings.follow_up_enabled if request.follow_up is None else request.follow_up
        ),
        "enable_vision": settings.vision_enabled if request.vision is None else request.vision,
        "filters": _filters_from(request),
    }


def _to_response(result: AnswerResult, request_id: str) -> ChatResponse:
    return ChatResponse(
        answer=result.answer,
        citations=result.citations,
        thoughts=result.thoughts,
        follow_up_questions=result.follow_up_questions,
        search_query=result.search_query,
        sources=[SourceItem(**asdict(source)) for source in result.sources],
        history=[ChatMessage(role=turn.role, content=turn.content) for turn in result.history],
        request_id=request_id,
    )


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    """Set the cancel signal once the client goes away."""
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@app.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    http_request: Request,
    engine: ChatEngine = Depends(get_engine),
) -> ChatResponse:
    """Answer one chat turn with citations."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(http_request, cancel))
    try:
        result = await engine.answer_question(**_engine_kwargs(request), cancel=cancel)
    except RAGError as exc:
        record_chat_turn(type(exc).__name__)
        raise
    finally:
        watcher.cancel()
    record_chat_turn("answered")
    return _to_response(result, request_id)


@app.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    engine: ChatEngine = Depends(get_engine),
) -> StreamingResponse:
    """Stream answer tokens as NDJSON, ending with the full result."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))

    async def _events() -> AsyncIterator[str]:
        events = engine.stream_answer(**_engine_kwargs(request))
        try:
            async for event in events:
                if event.type == "token":
                    yield json.dumps({"type": "token", "text": event.text}) + "\n"
                elif event.result is not None:
                    payload = _to_response(event.result, request_id).model_dump()
                    yield json.dumps({"type": "result", "result": payload}) + "\n"
        except RAGError as exc:
            # Headers are already sent; report the failure in-band.
            record_chat_turn(type(exc).__name__)
            logger.error(
                "chat_stream_failed",
                extra={
                    "request_id": request_id,
                    "error_type": type(exc).__name__,
                    "stage": exc.stage,
                },
            )
            body = _error_body(exc, request_id)
            yield json.dumps({"type": "error", "status": status_for_error(exc), **body}) + "\n"
            return
        finally:
            await events.aclose()
        record_chat_turn("answered")

    return StreamingResponse(_events(), media_type="application/x-ndjson")
