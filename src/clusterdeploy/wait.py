"""Polling helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Callable

from .errors import WaitTimeoutError


async def wait_until(
    predicate: Callable[[], Awaitable[bool]],
    timeout: float,
    poll: float,
) -> None:
    """Poll ``predicate`` every ``poll`` seconds until it is true.

    The first check happens immediately. Raises WaitTimeoutError once
    ``timeout`` seconds have passed, including when a single check is still
    running at the deadline.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise WaitTimeoutError(timeout)
        try:
            if await asyncio.wait_for(predicate(), timeout=remaining):
                return
        except asyncio.TimeoutError:
            raise WaitTimeoutError(timeout) from None
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise WaitTimeoutError(timeout)
        await asyncio.sleep(min(poll, remaining))
