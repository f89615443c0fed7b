from __future__ import annotations

"""Core data types for documents, chunks, retrieval and chat turns."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


@dataclass(frozen=True)
class Document:
    """Uploaded document awaiting ingestion."""
    document_id: str
    data: bytes
    content_type: str


@dataclass(frozen=True)
class Chunk:
    """Document chunk with its embedding and metadata."""
    id: str
    document_id: str
    ordinal: int
    text: str
    vector: list[float] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def chunk_id_for(document_id: str, ordinal: int) -> str:
    """Return the deterministic chunk id for a document ordinal."""
    return f"{document_id}-{ordinal}"


@dataclass(frozen=True)
class SearchResult:
    """Search result with relevance score."""
    chunk: Chunk
    score: float


class RetrievalMode(str, Enum):
    """Retrieval strategy used against the vector store."""
    TEXT = "text"
    VECTOR = "vector"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: str | RetrievalMode) -> RetrievalMode:
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class ConversationTurn:
    """Single chat message."""
    role: Role
    content: str


ChatHistory = tuple[ConversationTurn, ...]


def append_turns(history: ChatHistory, *turns: ConversationTurn) -> ChatHistory:
    """Return a new history with turns appended."""
    return tuple(history) + tuple(turns)


@dataclass(frozen=True)
class SourceRef:
    """Source passed to the model while answering."""
    id: str
    text: str
    score: float
    kind: Literal["text", "image"] = "text"
    page: int | None = None
    source_name: str | None = None


@dataclass(frozen=True)
class Citation:
    """Citation referenced by the generated answer."""
    source_id: str
    kind: Literal["text", "image"] = "text"


@dataclass(frozen=True)
class AnswerResult:
    """Grounded answer produced for one chat turn."""
    answer: str
    citations: list[str]
    thoughts: str
    follow_up_questions: list[str] = field(default_factory=list)
    citation_details: list[Citation] = field(default_factory=list)
    search_query: str = ""
    sources: list[SourceRef] = field(default_factory=list)
    history: ChatHistory = ()


class IngestionState(str, Enum):
    """Lifecycle of a document through ingestion."""
    RECEIVED = "received"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    INDEXED = "indexed"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestionOutcome:
    """Final state of an ingestion attempt."""
    document_id: str
    state: IngestionState
    chunk_count: int = 0
    failed_stage: IngestionState | None = None
    error: Exception | None = None
