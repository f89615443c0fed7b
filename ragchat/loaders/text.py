from __future__ import annotations

"""Plain text loader for ingestion."""

from ragchat.loaders.chunking import normalize_text

Page = tuple[int, str]


def load_text_bytes(data: bytes) -> list[Page]:
    """Decode plain text bytes into a single page."""
    content = normalize_text(data.decode("utf-8", errors="ignore"))
    return [(1, content)] if content else []
