from __future__ import annotations

"""Markdown loader for ingestion."""

import re

from ragchat.loaders.text import Page, load_text_bytes

_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")


def load_markdown_bytes(data: bytes) -> list[Page]:
    """Load Markdown bytes, keeping link and image text but dropping targets."""
    pages = load_text_bytes(data)
    return [
        (number, _LINK_RE.sub(r"\1", _IMAGE_RE.sub(r"\1", content)))
        for number, content in pages
    ]
