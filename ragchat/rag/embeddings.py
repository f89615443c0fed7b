from __future__ import annotations

"""Embedding backends and the batching, retrying embedding provider."""

import asyncio
import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from ragchat.rag.cancellation import run_cancellable
from ragchat.rag.errors import (
    EmbeddingConfigError,
    EmbeddingError,
    FailureKind,
    failure_kind_for_status,
)
from ragchat.rag.tokens import count_tokens

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class EmbeddingBackend(Protocol):
    """Protocol for embedding endpoints."""
    dimension: int

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one embedding vector per input text, in order."""
        raise NotImplementedError


def validate_vector(vector: list[float], dimension: int) -> list[float]:
    """Validate and normalize embedding vectors."""
    if len(vector) != dimension:
        raise EmbeddingError(
            f"Embedding dimension mismatch: expected {dimension}, got {len(vector)}",
            kind=FailureKind.INVALID,
        )
    cleaned: list[float] = []
    for value in vector:
        if not isinstance(value, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value", kind=FailureKind.INVALID)
        if not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-finite value", kind=FailureKind.INVALID)
        cleaned.append(float(value))
    return cleaned


@dataclass
class HashEmbedder:
    """Deterministic hash-based embedder for testing or offline use."""
    dimension: int = 256

    def embed(self, text: str) -> list[float]:
        """Embed text using token hashing and L2 normalization."""
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return [0.0] * self.dimension
        vector = [0.0] * self.dimension
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dimension
            vector[idx] += 1.0
        return validate_vector(_l2_normalize(vector), self.dimension)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


def _l2_normalize(vector: list[float]) -> list[float]:
    """Normalize vector magnitude to 1.0."""
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return vector
    return [value / norm for value in vector]


def resolve_openai_dimension(model: str) -> int | None:
    """Return expected dimension for OpenAI embedding model."""
    mapping = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }
    return mapping.get(model)


@dataclass
class OpenAIEmbedder:
    """Embedding backend using the OpenAI embeddings API."""
    api_key: str
    model: str
    dimension: int
    base_url: str | None = None
    timeout: float = 30.0
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate OpenAI configuration and create a client."""
        if not self.api_key:
            raise EmbeddingConfigError("OPENAI_API_KEY is required for OpenAIEmbedder")
        if not self.model:
            raise EmbeddingConfigError("OPENAI_EMBEDDING_MODEL is required for OpenAIEmbedder")
        resolved = resolve_openai_dimension(self.model)
        if self.dimension <= 0:
            if resolved is None:
                raise EmbeddingConfigError(
                    "EMBEDDING_DIMENSION must be set for OpenAI embeddings when model is unknown"
                )
            self.dimension = resolved
        elif resolved is not None and self.dimension != resolved:
            raise EmbeddingConfigError(
                f"EMBEDDING_DIMENSION should be {resolved} for model {self.model}"
            )
        from openai import AsyncOpenAI

        # Retries are handled by BatchingEmbedder.
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts with a single API call."""
        import openai

        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except openai.RateLimitError as exc:
            raise EmbeddingError(str(exc), kind=FailureKind.RATE_LIMITED) from exc
        except openai.APIStatusError as exc:
            raise EmbeddingError(str(exc), kind=failure_kind_for_status(exc.status_code)) from exc
        except openai.APIError as exc:
            raise EmbeddingError(str(exc), kind=FailureKind.UNAVAILABLE) from exc
        items = sorted(response.data, key=lambda item: item.index)
        return [validate_vector(list(item.embedding), self.dimension) for item in items]


@dataclass
class GeminiEmbedder:
    """Embedding backend using the Gemini embeddings API."""
    api_key: str
    model: str
    dimension: int
    timeout: float = 30.0
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate Gemini configuration and create a client."""
        if not self.api_key:
            raise EmbeddingConfigError("GEMINI_API_KEY is required for GeminiEmbedder")
        if not self.model:
            raise EmbeddingConfigError("GEMINI_EMBEDDING_MODEL is required for GeminiEmbedder")
        if self.dimension <= 0:
            raise EmbeddingConfigError("EMBEDDING_DIMENSION must be set for Gemini embeddings")
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        self.client = genai

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts using the Gemini API."""
        from google.api_core import exceptions as google_exceptions

        def _run() -> Any:
            return self.client.embed_content(model=self.model, content=texts)

        try:
            result = await asyncio.wait_for(asyncio.to_thread(_run), timeout=self.timeout)
        except google_exceptions.ResourceExhausted as exc:
            raise EmbeddingError(str(exc), kind=FailureKind.RATE_LIMITED) from exc
        except (google_exceptions.InvalidArgument, google_exceptions.PermissionDenied) as exc:
            raise EmbeddingError(str(exc), kind=FailureKind.INVALID) from exc
        except (google_exceptions.GoogleAPIError, asyncio.TimeoutError) as exc:
            raise EmbeddingError(str(exc), kind=FailureKind.UNAVAILABLE) from exc
        embedding = None
        if isinstance(result, dict):
            embedding = result.get("embedding")
        if embedding is None:
            embedding = getattr(result, "embedding", None)
        if embedding is None:
            raise EmbeddingError(
                "Gemini embedding response missing embedding vector", kind=FailureKind.INVALID
            )
        if texts and embedding and not isinstance(embedding[0], (list, tuple)):
            embedding = [embedding]
        return [validate_vector(list(vector), self.dimension) for vector in embedding]


@dataclass
class BatchingEmbedder:
    """Embedding provider that batches, retries and reassembles in input order.

    Inputs are split into sub-batches of at most ``max_batch_size`` items and,
    when ``max_batch_tokens`` is positive, at most that many tokens. Sub-batches
    run concurrently up to ``concurrency``; each one is retried on its own with
    exponential backoff, so a transient failure never re-embeds a sub-batch
    that already succeeded.
    """
    backend: EmbeddingBackend
    max_batch_size: int = 16
    max_batch_tokens: int = 0
    concurrency: int = 4
    max_attempts: int = 4
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    def plan_batches(self, texts: list[str]) -> list[list[int]]:
        """Group input positions into sub-batches within the item and token limits."""
        batches: list[list[int]] = []
        current: list[int] = []
        current_tokens = 0
        for idx, text in enumerate(texts):
            tokens = count_tokens(text) if self.max_batch_tokens > 0 else 0
            over_items = len(current) >= max(1, self.max_batch_size)
            over_tokens = (
                self.max_batch_tokens > 0
                and current
                and current_tokens + tokens > self.max_batch_tokens
            )
            if over_items or over_tokens:
                batches.append(current)
                current = []
                current_tokens = 0
            current.append(idx)
            current_tokens += tokens
        if current:
            batches.append(current)
        return batches

    async def embed(
        self, texts: list[str], cancel: asyncio.Event | None = None
    ) -> list[list[float]]:
        """Embed texts, returning one vector per input in the same order."""
        if not texts:
            return []
        return await run_cancellable(self._embed_all(list(texts)), cancel, "embed")

    async def embed_query(self, text: str, cancel: asyncio.Event | None = None) -> list[float]:
        """Embed a single query string."""
        vectors = await self.embed([text], cancel=cancel)
        return vectors[0]

    async def _embed_all(self, texts: list[str]) -> list[list[float]]:
        batches = self.plan_batches(texts)
        semaphore = asyncio.Semaphore(max(1, self.concurrency))

        async def _run(positions: list[int]) -> list[list[float]]:
            async with semaphore:
                return await self._embed_with_retry([texts[idx] for idx in positions])

        tasks = [asyncio.ensure_future(_run(positions)) for positions in batches]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        vectors: list[list[float]] = [[] for _ in texts]
        for positions, batch_vectors in zip(batches, results):
            for idx, vector in zip(positions, batch_vectors):
                vectors[idx] = vector
        logger.debug(
            "embedding_complete",
            extra={"inputs": len(texts), "batches": len(batches)},
        )
        return vectors

    async def _embed_with_retry(self, batch: list[str]) -> list[list[float]]:
        attempt = 1
        while True:
            try:
                vectors = await self.backend.embed_batch(batch)
            except EmbeddingError as exc:
                if not exc.retryable or attempt >= self.max_attempts:
                    logger.error(
                        "embedding_batch_failed",
                        extra={"kind": exc.kind.value, "attempts": attempt, "size": len(batch)},
                    )
                    raise
                delay = min(self.max_backoff_seconds, self.backoff_seconds * 2 ** (attempt - 1))
                logger.warning(
                    "embedding_batch_retry",
                    extra={"kind": exc.kind.value, "attempt": attempt, "delay": delay},
                )
                await self.sleep(delay)
                attempt += 1
                continue
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"Embedding backend returned {len(vectors)} vectors for {len(batch)} inputs",
                    kind=FailureKind.INVALID,
                )
            return vectors
