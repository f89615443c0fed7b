from __future__ import annotations

"""Content-type dispatch for document text extraction."""

from typing import Callable

from ragchat.loaders.docx import load_docx_bytes
from ragchat.loaders.markdown import load_markdown_bytes
from ragchat.loaders.pdf import load_pdf_bytes
from ragchat.loaders.text import Page, load_text_bytes
from ragchat.rag.errors import ExtractionError

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_LOADERS: dict[str, Callable[[bytes], list[Page]]] = {
    "text/plain": load_text_bytes,
    "text/markdown": load_markdown_bytes,
    "text/x-markdown": load_markdown_bytes,
    "application/pdf": load_pdf_bytes,
    DOCX_CONTENT_TYPE: load_docx_bytes,
}

_SUFFIXES = {
    ".txt": "text/plain",
    ".text": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".pdf": "application/pdf",
    ".docx": DOCX_CONTENT_TYPE,
}


def guess_content_type(filename: str, declared: str | None = None) -> str:
    """Resolve a content type from the declared type or the file suffix."""
    normalized = (declared or "").split(";", 1)[0].strip().lower()
    if normalized in _LOADERS:
        return normalized
    suffix = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return _SUFFIXES.get(suffix, normalized or "application/octet-stream")


def extract_pages(data: bytes, content_type: str) -> list[Page]:
    """Return (page number, text) pairs for a supported document."""
    loader = _LOADERS.get(content_type.split(";", 1)[0].strip().lower())
    if loader is None:
        raise ExtractionError(f"Unsupported content type: {content_type}", stage="extract")
    return loader(data)
