from __future__ import annotations

"""Read-retrieve-read chat orchestration.

One turn runs four stages in order: rewrite the question into a search query,
retrieve sources, generate a structured grounded answer, and optionally ask
for follow-up questions. Stage 1 and stage 4 degrade on model failure; stage
3 failures end the turn.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Sequence

from ragchat.rag.cancellation import run_cancellable
from ragchat.rag.citations import extract_citations
from ragchat.rag.errors import GenerationFormatError, InputError, LLMError
from ragchat.rag.llm import ChatModel, JsonObjectTracker, parse_json_array, parse_json_object
from ragchat.rag.prompts import (
    SYSTEM_PERSONA,
    answer_messages,
    fit_sources,
    follow_up_messages,
)
from ragchat.rag.retrieval import Retriever
from ragchat.rag.rewriter import QueryRewriter
from ragchat.rag.tokens import trim_history
from ragchat.rag.types import (
    AnswerResult,
    ChatHistory,
    ConversationTurn,
    RetrievalMode,
    SearchResult,
    SourceRef,
    append_turns,
)
from ragchat.vectorstore.base import SearchFilters

logger = logging.getLogger(__name__)

MAX_FOLLOW_UP_QUESTIONS = 3


@dataclass(frozen=True)
class StreamEvent:
    """Event emitted while streaming a chat turn."""
    type: Literal["token", "result"]
    text: str = ""
    result: AnswerResult | None = None


@dataclass(frozen=True)
class _Generated:
    answer: str
    thoughts: str
    raw: str


def _to_sources(results: Sequence[SearchResult], kind: Literal["text", "image"]) -> list[SourceRef]:
    return [
        SourceRef(
            id=result.chunk.id,
            text=result.chunk.text,
            score=result.score,
            kind=kind,
            page=result.chunk.metadata.get("page"),
            source_name=result.chunk.metadata.get("source_name"),
        )
        for result in results
    ]


def _read_answer(content: str) -> _Generated:
    """Parse the structured answer object or raise GenerationFormatError."""
    parsed = parse_json_object(content)
    answer = parsed.get("answer")
    thoughts = parsed.get("thoughts")
    if not isinstance(answer, str) or not isinstance(thoughts, str):
        raise GenerationFormatError(
            "LLM JSON response must contain string fields answer and thoughts", raw=content
        )
    return _Generated(answer=answer.strip(), thoughts=thoughts.strip(), raw=content)


@dataclass
class ChatEngine:
    """Chat orchestration engine bound to a model and retrievers."""
    model: ChatModel
    retriever: Retriever
    image_retriever: Retriever | None = None
    default_mode: RetrievalMode = RetrievalMode.HYBRID
    default_top_k: int = 3
    min_score: float = 0.0
    context_max_chars: int = 12000
    history_max_tokens: int = 0
    system_prompt: str = SYSTEM_PERSONA
    rewriter: QueryRewriter = field(init=False)

    def __post_init__(self) -> None:
        self.rewriter = QueryRewriter(model=self.model)

    async def answer_question(
        self,
        question: str,
        history: ChatHistory = (),
        mode: RetrievalMode | str | None = None,
        top_k: int | None = None,
        *,
        enable_follow_up: bool = False,
        enable_vision: bool = False,
        filters: SearchFilters | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AnswerResult:
        """Answer a question in one non-streaming call."""
        result: AnswerResult | None = None
        async for event in self._run(
            question,
            history,
            mode,
            top_k,
            streaming=False,
            enable_follow_up=enable_follow_up,
            enable_vision=enable_vision,
            filters=filters,
            cancel=cancel,
        ):
            if event.type == "result":
                result = event.result
        if result is None:
            raise GenerationFormatError("Chat turn ended without an answer result")
        return result

    def stream_answer(
        self,
        question: str,
        history: ChatHistory = (),
        mode: RetrievalMode | str | None = None,
        top_k: int | None = None,
        *,
        enable_follow_up: bool = False,
        enable_vision: bool = False,
        filters: SearchFilters | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield answer tokens as they arrive, then a final result event."""
        return self._run(
            question,
            history,
            mode,
            top_k,
            streaming=True,
            enable_follow_up=enable_follow_up,
            enable_vision=enable_vision,
            filters=filters,
            cancel=cancel,
        )

    async def _run(
        self,
        question: str,
        history: ChatHistory,
        mode: RetrievalMode | str | None,
        top_k: int | None,
        *,
        streaming: bool,
        enable_follow_up: bool,
        enable_vision: bool,
        filters: SearchFilters | None,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[StreamEvent]:
        if not question.strip():
            raise InputError("question must not be empty", stage="input")
        if enable_vision and self.image_retriever is None:
            raise InputError("vision retrieval is not configured", stage="input")
        history = tuple(history)
        prompt_history = trim_history(history, self.history_max_tokens)
        resolved_mode = self.default_mode if mode is None else mode
        resolved_top_k = self.default_top_k if top_k is None else top_k

        search_query = await self._rewrite(question, prompt_history, cancel)
        sources = await self._retrieve(
            search_query, resolved_mode, resolved_top_k, filters, enable_vision, cancel
        )
        # Only sources shown to the model can be cited or returned.
        sources = fit_sources(sources, self.context_max_chars)

        messages = answer_messages(
            prompt_history,
            question,
            sources,
            self.context_max_chars,
            system_prompt=self.system_prompt,
        )
        if streaming:
            fragments: list[str] = []
            async for fragment in self._stream_generation(messages, cancel):
                fragments.append(fragment)
                yield StreamEvent(type="token", text=fragment)
            content = "".join(fragments)
        else:
            content = await self._complete(messages, cancel)
        generated = await self._parse_or_retry(content, prompt_history, question, sources, cancel)

        follow_ups: list[str] = []
        if enable_follow_up:
            follow_ups = await self._follow_ups(question, generated.answer, sources, cancel)

        citations = extract_citations(generated.answer, sources)
        logger.info(
            "chat_turn_completed",
            extra={
                "sources": len(sources),
                "citations": len(citations),
                "follow_ups": len(follow_ups),
                "answer_length": len(generated.answer),
                "streaming": streaming,
            },
        )
        result = AnswerResult(
            answer=generated.answer,
            citations=[citation.source_id for citation in citations],
            thoughts=generated.thoughts,
            follow_up_questions=follow_ups,
            citation_details=citations,
            search_query=search_query,
            sources=sources,
            history=append_turns(
                history,
                ConversationTurn(role="user", content=question),
                ConversationTurn(role="assistant", content=generated.answer),
            ),
        )
        yield StreamEvent(type="result", result=result)

    async def _rewrite(
        self, question: str, history: ChatHistory, cancel: asyncio.Event | None
    ) -> str:
        """Stage 1: rewrite the question, falling back to it on model failure."""
        try:
            return await self.rewriter.rewrite(question, history, cancel=cancel)
        except LLMError as exc:
            logger.warning(
                "query_rewrite_failed",
                extra={"kind": exc.kind.value, "question_length": len(question)},
            )
            return question

    async def _retrieve(
        self,
        search_query: str,
        mode: RetrievalMode | str,
        top_k: int,
        filters: SearchFilters | None,
        enable_vision: bool,
        cancel: asyncio.Event | None,
    ) -> list[SourceRef]:
        """Stage 2: retrieve text sources and, when enabled, image sources concurrently."""
        if enable_vision and self.image_retriever is not None:
            text_results, image_results = await asyncio.gather(
                self.retriever.retrieve(search_query, mode, top_k, filters, cancel=cancel),
                self.image_retriever.retrieve(
                    search_query, RetrievalMode.VECTOR, top_k, filters, cancel=cancel
                ),
            )
        else:
            text_results = await self.retriever.retrieve(
                search_query, mode, top_k, filters, cancel=cancel
            )
            image_results = []
        sources: list[SourceRef] = []
        seen: set[str] = set()
        for source in _to_sources(text_results, "text") + _to_sources(image_results, "image"):
            if source.id in seen or source.score < self.min_score:
                continue
            seen.add(source.id)
            sources.append(source)
        return sources

    async def _complete(
        self,
        messages: list[ConversationTurn],
        cancel: asyncio.Event | None,
    ) -> str:
        try:
            return await run_cancellable(
                self.model.complete(messages, json_mode=True), cancel, "generate"
            )
        except LLMError as exc:
            exc.stage = exc.stage or "generate"
            logger.error("generation_failed", extra={"kind": exc.kind.value})
            raise

    async def _stream_generation(
        self,
        messages: list[ConversationTurn],
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[str]:
        """Relay model fragments until the stream ends or the JSON object closes."""
        tracker = JsonObjectTracker()
        stream = self.model.stream(messages, json_mode=True)

        async def _next() -> Any:
            return await stream.__anext__()

        try:
            while True:
                try:
                    fragment = await run_cancellable(_next(), cancel, "generate")
                except StopAsyncIteration:
                    break
                yield fragment
                if tracker.feed(fragment):
                    break
        except LLMError as exc:
            exc.stage = exc.stage or "generate"
            logger.error("generation_failed", extra={"kind": exc.kind.value, "streaming": True})
            raise
        finally:
            await stream.aclose()

    async def _parse_or_retry(
        self,
        content: str,
        history: ChatHistory,
        question: str,
        sources: list[SourceRef],
        cancel: asyncio.Event | None,
    ) -> _Generated:
        """Stage 3 validation: parse the answer object, retrying once with a strict prompt."""
        try:
            return _read_answer(content)
        except GenerationFormatError:
            logger.warning("generation_format_retry", extra={"raw_length": len(content)})
        strict = answer_messages(
            history,
            question,
            sources,
            self.context_max_chars,
            strict=True,
            system_prompt=self.system_prompt,
        )
        retry_content = await self._complete(strict, cancel)
        try:
            return _read_answer(retry_content)
        except GenerationFormatError as exc:
            logger.error("generation_format_failed", extra={"raw_length": len(retry_content)})
            raise GenerationFormatError(
                "Model output was not a valid answer object after retry",
                raw=retry_content,
            ) from exc

    async def _follow_ups(
        self,
        question: str,
        answer: str,
        sources: list[SourceRef],
        cancel: asyncio.Event | None,
    ) -> list[str]:
        """Stage 4: ask for follow-up questions; failures yield an empty list."""
        messages = follow_up_messages(question, answer, sources, self.context_max_chars)
        try:
            content = await run_cancellable(
                self.model.complete(messages, json_mode=True), cancel, "follow_up"
            )
            items = parse_json_array(content)
        except (LLMError, GenerationFormatError) as exc:
            logger.warning("follow_up_failed", extra={"error": type(exc).__name__})
            return []
        questions = [item.strip() for item in items if isinstance(item, str) and item.strip()]
        return questions[:MAX_FOLLOW_UP_QUESTIONS]
