"""Hard timeout helper for calls to external services."""

import asyncio
from typing import Awaitable, TypeVar

from knowledge_graph.core.exceptions import APITimeoutError

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], seconds: float, message: str) -> T:
    """Await ``awaitable`` but give up after ``seconds``.

    The pending work is cancelled on timeout; nothing it produced is used.

    Raises:
        APITimeoutError: If the awaitable does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise APITimeoutError(message, original_error=e) from e
