from __future__ import annotations

"""PDF text extraction and cleanup."""

import re

from ragchat.loaders.text import Page
from ragchat.rag.errors import ExtractionError

_INLINE_WS_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def _clean_pdf_text(text: str) -> str:
    """Join hyphenated line breaks and collapse whitespace, keeping paragraphs."""
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n")
    cleaned = re.sub(r"(\w)-\n(\w)", r"\1\2", cleaned)
    cleaned = re.sub(r"(?<!\n)\n(?!\n)", " ", cleaned)
    cleaned = _INLINE_WS_RE.sub(" ", cleaned)
    cleaned = _BLANK_LINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def load_pdf_bytes(data: bytes) -> list[Page]:
    """Extract one page of text per PDF page."""
    import fitz

    try:
        reader = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError) as exc:
        raise ExtractionError(f"Unable to open PDF: {exc}", stage="extract") from exc
    pages: list[Page] = []
    with reader:
        for number, page in enumerate(reader, start=1):
            content = _clean_pdf_text(page.get_text() or "")
            if content:
                pages.append((number, content))
    return pages
