"""Bounded retry with exponential backoff for transient provider errors."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int,
    backoff: float,
    retry_on: tuple[type[BaseException], ...],
    operation: str = "operation",
) -> T:
    """Call `func`, retrying up to `retries` times on `retry_on` exceptions.

    Sleeps backoff, 2*backoff, 4*backoff... between attempts. The last
    exception propagates unchanged.
    """
    for attempt in range(retries + 1):
        try:
            return await func()
        except retry_on as e:
            if attempt >= retries:
                logger.error(f"{operation} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff * (2**attempt)
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{retries + 1}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
