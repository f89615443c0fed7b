from __future__ import annotations

"""Prompt templates and message builders for the chat stages."""

from typing import Sequence

from ragchat.rag.types import ChatHistory, ConversationTurn, SourceRef

SYSTEM_PERSONA = (
    "You are an assistant that helps people answer questions about their documents. "
    "Answer only from the sources provided below. "
    "If the sources are insufficient, say you don't know. "
    "Do not use external knowledge. "
    "Each source has an identifier followed by a colon and its content. "
    "Cite every fact with the identifier of its source in square brackets, "
    "for example [info1.txt-0]. Do not combine identifiers; list each separately, "
    "for example [info1.txt-0][info2.pdf-3]."
)

ANSWER_FORMAT_INSTRUCTION = (
    "Return JSON only: a single object with exactly two string fields, "
    "\"answer\" (the answer text with citations) and "
    "\"thoughts\" (a short explanation of how you used the sources)."
)

STRICT_RETRY_INSTRUCTION = (
    "Your previous response was not valid. "
    "Strictly return the object: a single JSON object with the string fields "
    "\"answer\" and \"thoughts\" and nothing else. "
    "Do not use markdown or code fences."
)

QUERY_REWRITE_INSTRUCTION = (
    "Below is the conversation so far and a new question from the user. "
    "Produce a concise, precise search query from the conversation that will "
    "retrieve the sources needed to answer the new question. "
    "Do not include cited source identifiers or quotation marks. "
    "Return only the query."
)

FOLLOW_UP_INSTRUCTION = (
    "Generate up to three brief follow-up questions the user would likely ask next, "
    "answerable from the same sources. Do not repeat questions already asked. "
    "Return JSON only: an array of strings."
)

IMAGE_SOURCE_NOTE = "Sources marked (image) describe figures or images from the documents."


def _source_lines(sources: Sequence[SourceRef], max_chars: int) -> list[tuple[SourceRef, str]]:
    """Pair each source that fits the character budget with its ``id: content`` line."""
    lines: list[tuple[SourceRef, str]] = []
    total = 0
    for source in sources:
        label = f"{source.id} (image)" if source.kind == "image" else source.id
        header = f"{label}: "
        content = " ".join(source.text.split())
        line = header + content
        if max_chars > 0 and total + len(line) > max_chars:
            remaining = max_chars - total
            if remaining <= len(header):
                break
            line = header + content[: remaining - len(header)]
        lines.append((source, line))
        total += len(line) + 1
    return lines


def fit_sources(sources: Sequence[SourceRef], max_chars: int) -> list[SourceRef]:
    """Return the sources that appear in a prompt built with this budget."""
    return [source for source, _ in _source_lines(sources, max_chars)]


def format_sources(sources: Sequence[SourceRef], max_chars: int) -> str:
    """Render sources as ``id: content`` lines within a character budget."""
    return "\n".join(line for _, line in _source_lines(sources, max_chars))


def rewrite_messages(history: ChatHistory, question: str) -> list[ConversationTurn]:
    """Build the query-rewrite request."""
    return [
        ConversationTurn(role="system", content=QUERY_REWRITE_INSTRUCTION),
        *[turn for turn in history if turn.role != "system"],
        ConversationTurn(role="user", content=f"Generate search query for: {question}"),
    ]


def answer_messages(
    history: ChatHistory,
    question: str,
    sources: Sequence[SourceRef],
    max_chars: int,
    strict: bool = False,
    system_prompt: str = SYSTEM_PERSONA,
) -> list[ConversationTurn]:
    """Build the grounded answer request."""
    system = system_prompt
    if any(source.kind == "image" for source in sources):
        system = f"{system} {IMAGE_SOURCE_NOTE}"
    system = f"{system} {ANSWER_FORMAT_INSTRUCTION}"
    if strict:
        system = f"{system} {STRICT_RETRY_INSTRUCTION}"
    return [
        ConversationTurn(role="system", content=system),
        *[turn for turn in history if turn.role != "system"],
        ConversationTurn(
            role="user",
            content=f"{question}\n\nSources:\n{format_sources(sources, max_chars)}",
        ),
    ]


def follow_up_messages(
    question: str,
    answer: str,
    sources: Sequence[SourceRef],
    max_chars: int,
) -> list[ConversationTurn]:
    """Build the follow-up question request."""
    return [
        ConversationTurn(role="system", content=FOLLOW_UP_INSTRUCTION),
        ConversationTurn(
            role="user",
            content=(
                f"Question: {question}\n\nAnswer: {answer}\n\n"
                f"Sources:\n{format_sources(sources, max_chars)}"
            ),
        ),
    ]
