"""Concurrent per-node fan-out with first-error semantics."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def fan_out(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    cancel_on_error: bool = False,
) -> list[R]:
    """Run ``fn`` for every item concurrently and wait for all of them.

    Raises the first error in completion order. Other failures are logged and
    attached to that error as notes. A failure does not stop the siblings
    unless ``cancel_on_error`` is set; cancelling the caller always cancels
    every sibling. Results are returned in item order.
    """
    tasks = [asyncio.ensure_future(fn(item)) for item in items]
    if not tasks:
        return []

    errors: list[BaseException] = []
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    errors.append(task.exception())
            if errors and cancel_on_error and pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                pending = set()
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if errors:
        first = errors[0]
        for other in errors[1:]:
            logger.warning("Additional concurrent failure: %s", other)
            first.add_note(f"also failed: {other}")
        raise first
    return [task.result() for task in tasks]
