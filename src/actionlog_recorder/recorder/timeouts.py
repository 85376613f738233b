"""Optional deadline for individual store round trips."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout_s: float | None) -> T:
    """Await ``awaitable``, raising ``asyncio.TimeoutError`` after ``timeout_s``.

    ``None`` waits indefinitely.
    """
    if timeout_s is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout_s)
