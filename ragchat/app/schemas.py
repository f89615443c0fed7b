from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatFilters(BaseModel):
    include_category: str | None = None
    exclude_category: str | None = None
    document_id: str | None = None
    content_type: str | None = None


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)
    history: list[ChatMessage] = Field(default_factory=list)
    mode: Literal["text", "vector", "hybrid"] | None = None
    top_k: int | None = Field(default=None, ge=1, le=50)
    follow_up: bool | None = None
    vision: bool | None = None
    filters: ChatFilters | None = None


class SourceItem(BaseModel):
    id: str
    text: str
    score: float
    kind: Literal["text", "image"] = "text"
    page: int | None = None
    source_name: str | None = None


class ChatResponse(BaseModel):
    answer: str
    citations: list[str]
    thoughts: str
    follow_up_questions: list[str] = Field(default_factory=list)
    search_query: str
    sources: list[SourceItem] = Field(default_factory=list)
    history: list[ChatMessage] = Field(default_factory=list)
    request_id: str


class IngestedDocument(BaseModel):
    document_id: str
    state: str
    chunk_count: int = 0
    failed_stage: str | None = None
    error: str | None = None


class IngestResponse(BaseModel):
    ingested: int
    documents: list[IngestedDocument]


class DeleteDocumentRequest(BaseModel):
    document_ids: list[str] = Field(min_length=1)
    collection: Literal["text", "images"] = "text"


class DeleteDocumentResponse(BaseModel):
    deleted: int


class StatsResponse(BaseModel):
    backend: str
    chunk_count: int
    document_count: int | None = None
    embedding_dimension: int
    collection: str | None = None
    images: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    status: str
    backend: str | None = None
    ok: bool | None = None
    detail: str | None = None
