from __future__ import annotations

"""Helpers for racing remote calls against a caller cancellation signal."""

import asyncio
from typing import Awaitable, TypeVar

from ragchat.rag.errors import Cancelled

T = TypeVar("T")


def check_cancelled(cancel: asyncio.Event | None, stage: str) -> None:
    """Raise Cancelled when the signal is already set."""
    if cancel is not None and cancel.is_set():
        raise Cancelled("Request cancelled", stage=stage)


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel: asyncio.Event | None,
    stage: str,
) -> T:
    """Await a remote call, aborting it when the cancel event fires."""
    if cancel is None:
        return await awaitable
    check_cancelled(cancel, stage)
    call = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        waiter.cancel()
    if call in done:
        return call.result()
    call.cancel()
    try:
        await call
    except asyncio.CancelledError:
        pass
    raise Cancelled("Request cancelled", stage=stage)
