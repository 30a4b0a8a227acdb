"""Caller-side retry wrapper.  Transport sessions never retry on their own."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """
    Await ``fn()`` up to *retries* times.

    Waits ``delay * attempt`` seconds between attempts and re-raises the last
    error once attempts are exhausted.
    """
    if retries < 1:
        raise ValueError("retries must be >= 1")

    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= retries:
                raise
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.1fs",
                attempt, retries, exc, delay * attempt,
            )
        await asyncio.sleep(delay * attempt)
        attempt += 1
