from __future__ import annotations

"""Citation extraction from generated answers."""

import re
from typing import Sequence

from ragchat.rag.types import Citation, SourceRef

CITATION_RE = re.compile(r"\[([^\[\]]+)\]")


def extract_citations(answer: str, sources: Sequence[SourceRef]) -> list[Citation]:
    """Return citations for known source ids in order of first mention.

    Markers naming an id that was not in the prompt are dropped.
    """
    known = {source.id: source.kind for source in sources}
    seen: set[str] = set()
    citations: list[Citation] = []
    for match in CITATION_RE.finditer(answer):
        source_id = match.group(1).strip()
        if source_id in seen or source_id not in known:
            continue
        seen.add(source_id)
        citations.append(Citation(source_id=source_id, kind=known[source_id]))
    return citations
