from __future__ import annotations

"""Typed errors shared by ingestion, retrieval and chat."""

from enum import Enum


class RAGError(RuntimeError):
    """Base error carrying the stage that raised it."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class InputError(RAGError):
    """Raised for invalid caller-supplied parameters."""
    pass


class FailureKind(str, Enum):
    """Failure modes reported by remote model endpoints."""
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"
    UNAVAILABLE = "unavailable"


class EmbeddingError(RAGError):
    """Raised when embeddings fail or are invalid."""

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.UNAVAILABLE,
        stage: str | None = "embed",
    ) -> None:
        super().__init__(message, stage=stage)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.INVALID


class EmbeddingConfigError(RAGError):
    """Raised when embedding configuration is invalid."""
    pass


class LLMError(RAGError):
    """Raised when language-model requests fail."""

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.UNAVAILABLE,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.kind = kind


class StoreError(RAGError):
    """Raised when the vector store rejects or cannot serve a request."""
    pass


class GenerationFormatError(RAGError):
    """Raised when model output cannot be parsed after one retry."""

    def __init__(self, message: str, *, raw: str = "", stage: str | None = "generate") -> None:
        super().__init__(message, stage=stage)
        self.raw = raw


class ExtractionError(RAGError):
    """Raised when document text cannot be extracted."""
    pass


class Cancelled(RAGError):
    """Raised when the caller cancels an in-flight request."""
    pass


def failure_kind_for_status(status_code: int) -> FailureKind:
    """Map an HTTP status code to a failure kind."""
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if 400 <= status_code < 500 and status_code not in {408, 409}:
        return FailureKind.INVALID
    return FailureKind.UNAVAILABLE
