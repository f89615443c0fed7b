from __future__ import annotations

"""Boundary-aware text chunking with exact character overlap."""

import bisect
import re
from dataclasses import dataclass
from typing import Iterator, Sequence

from ragchat.rag.errors import InputError

_WHITESPACE_RE = re.compile(r"[ \t\f\v]+")
_BOUNDARY_RE = re.compile(r"\n\s*\n|(?<=[.!?])\s+|\n")
_CONTENT_RE = re.compile(r"\S")


def normalize_text(text: str) -> str:
    """Normalize line endings and collapse runs of inline whitespace."""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def _validate(max_chunk_size: int, overlap: int) -> None:
    if overlap < 0:
        raise InputError("overlap must be zero or positive", stage="chunk")
    if max_chunk_size <= overlap:
        raise InputError(
            f"max_chunk_size ({max_chunk_size}) must be greater than overlap ({overlap})",
            stage="chunk",
        )


def _boundaries(text: str) -> list[int]:
    """Return sorted offsets where a paragraph, line or sentence ends."""
    offsets = [match.end() for match in _BOUNDARY_RE.finditer(text)]
    offsets.append(len(text))
    return sorted(set(offsets))


def iter_spans(text: str, max_chunk_size: int, overlap: int) -> Iterator[tuple[int, int]]:
    """Yield (start, end) offsets of consecutive chunks.

    Every chunk is a contiguous slice of ``text`` with non-whitespace content.
    Chunk ``n + 1`` begins with the last ``min(overlap, len(chunk n))``
    characters of chunk ``n``. A whitespace run too long to share a chunk with
    any content is skipped.
    """
    if not text.strip():
        return
    boundaries = _boundaries(text)
    length = len(text)
    start = 0
    cursor = 0
    while cursor < length:
        match = _CONTENT_RE.search(text, cursor)
        content_start = match.start() if match else length
        limit = min(length, start + max_chunk_size)
        if content_start >= limit:
            start = content_start - min(overlap, content_start - cursor)
            cursor = content_start
            continue
        idx = bisect.bisect_right(boundaries, limit) - 1
        end = boundaries[idx] if idx >= 0 else 0
        if end <= content_start:
            # No boundary fits: split the oversized unit, on a space if possible.
            space = text.rfind(" ", content_start, limit)
            end = space + 1 if space > content_start and limit < length else limit
        yield start, end
        shared = min(overlap, end - start)
        start = end - shared
        cursor = end


@dataclass(frozen=True)
class TextChunks:
    """Re-iterable view over the chunks of a text."""
    text: str
    max_chunk_size: int
    overlap: int

    def __iter__(self) -> Iterator[tuple[str, int]]:
        for ordinal, (start, end) in enumerate(
            iter_spans(self.text, self.max_chunk_size, self.overlap)
        ):
            yield self.text[start:end], ordinal


def chunk_text(text: str, max_chunk_size: int, overlap: int) -> TextChunks:
    """Split text into overlapping chunks of at most max_chunk_size characters."""
    _validate(max_chunk_size, overlap)
    return TextChunks(text=text, max_chunk_size=max_chunk_size, overlap=overlap)


def merge_chunks(chunks: Sequence[str], overlap: int) -> str:
    """Rebuild the original text from overlapping chunks."""
    if not chunks:
        return ""
    parts = [chunks[0]]
    for previous, current in zip(chunks, chunks[1:]):
        parts.append(current[min(overlap, len(previous)):])
    return "".join(parts)


@dataclass(frozen=True)
class PageChunk:
    """Chunk produced from a paged document."""
    text: str
    ordinal: int
    page: int


def chunk_pages(
    pages: Sequence[tuple[int, str]],
    max_chunk_size: int,
    overlap: int,
    separator: str = "\n\n",
) -> list[PageChunk]:
    """Chunk the joined text of all pages, tagging each chunk with its start page."""
    _validate(max_chunk_size, overlap)
    offsets: list[int] = []
    numbers: list[int] = []
    parts: list[str] = []
    position = 0
    for number, page_text in pages:
        if not page_text.strip():
            continue
        if parts:
            parts.append(separator)
            position += len(separator)
        offsets.append(position)
        numbers.append(number)
        parts.append(page_text)
        position += len(page_text)
    text = "".join(parts)
    chunks: list[PageChunk] = []
    for ordinal, (start, end) in enumerate(iter_spans(text, max_chunk_size, overlap)):
        page_idx = max(0, bisect.bisect_right(offsets, start) - 1)
        chunks.append(PageChunk(text=text[start:end], ordinal=ordinal, page=numbers[page_idx]))
    return chunks
