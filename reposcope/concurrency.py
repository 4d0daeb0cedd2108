"""Async helpers shared by the ingestion and query paths."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff for retry ``attempt`` (0-based), capped at ``maximum``."""
    return min(base * (2 ** attempt), maximum)


def check_cancelled(cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation cancelled")


async def run_cancellable(awaitable: Awaitable[T], cancel: Optional[asyncio.Event]) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first.

    When the signal wins, the pending call is cancelled and its eventual
    result is discarded. Threads started through ``asyncio.to_thread`` keep
    running to completion but nothing they return is used.
    """
    if cancel is None:
        return await awaitable
    check_cancelled(cancel)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if cancel.is_set():
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            # Retrieve a late exception so it is not reported as unhandled.
            task.exception()
        raise OperationCancelled("Operation cancelled")
    return task.result()


async def sleep_cancellable(delay: float, cancel: Optional[asyncio.Event]) -> None:
    if delay <= 0:
        check_cancelled(cancel)
        return
    await run_cancellable(asyncio.sleep(delay), cancel)
