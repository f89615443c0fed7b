from __future__ import annotations

"""Token counting and history trimming with tiktoken."""

from functools import lru_cache

import tiktoken

from ragchat.rag.types import ChatHistory


@lru_cache
def _encoding(name: str):
    try:
        return tiktoken.get_encoding(name)
    except ValueError:
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str, encoding_name: str = "cl100k_base") -> int:
    """Return the number of tokens in text."""
    if not text:
        return 0
    return len(_encoding(encoding_name).encode(text))


def trim_history(
    history: ChatHistory,
    max_tokens: int,
    encoding_name: str = "cl100k_base",
) -> ChatHistory:
    """Drop the oldest turns until the history fits in max_tokens.

    The newest turn is always kept, even when it alone exceeds the budget.
    """
    if max_tokens <= 0 or not history:
        return tuple(history)
    kept = [history[-1]]
    total = count_tokens(history[-1].content, encoding_name)
    for turn in reversed(history[:-1]):
        cost = count_tokens(turn.content, encoding_name)
        if total + cost > max_tokens:
            break
        kept.append(turn)
        total += cost
    return tuple(reversed(kept))
