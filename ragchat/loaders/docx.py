from __future__ import annotations

"""DOCX loader for document ingestion."""

from io import BytesIO
from zipfile import BadZipFile

from ragchat.loaders.text import Page
from ragchat.rag.errors import ExtractionError


def load_docx_bytes(data: bytes) -> list[Page]:
    """Load a DOCX file from bytes as a single page of paragraphs and tables."""
    from docx import Document as DocxDocument

    try:
        doc = DocxDocument(BytesIO(data))
    except (BadZipFile, KeyError, ValueError) as exc:
        raise ExtractionError(f"Unable to open DOCX: {exc}", stage="extract") from exc
    parts: list[str] = []
    for paragraph in doc.paragraphs:
        text = paragraph.text.strip()
        if text:
            parts.append(text)

    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))

    content = "\n\n".join(parts).strip()
    return [(1, content)] if content else []
