from __future__ import annotations

"""Query rewriting for retrieval optimization."""

import asyncio
from dataclasses import dataclass

from ragchat.rag.cancellation import run_cancellable
from ragchat.rag.llm import ChatModel
from ragchat.rag.prompts import rewrite_messages
from ragchat.rag.types import ChatHistory


@dataclass(frozen=True)
class QueryRewriter:
    """Rewriter that turns the conversation into a search query."""
    model: ChatModel

    async def rewrite(
        self,
        question: str,
        history: ChatHistory = (),
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Return the rewritten query, or the question if the model returned nothing."""
        if not question.strip():
            return question
        content = await run_cancellable(
            self.model.complete(rewrite_messages(history, question)), cancel, "rewrite"
        )
        rewritten = content.strip().strip('"').strip()
        if not rewritten:
            return question
        return rewritten
