"""Bounded retry with exponential backoff for calls to external services."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(cap, base * (2 ** (attempt - 1)))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: Tuple[Type[BaseException], ...],
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` calls have failed.

    Only exceptions in ``retry_on`` (and accepted by ``should_retry``) are
    retried; the last one is re-raised once attempts run out. There is no
    sleep after the final attempt.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= max_attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(f"{description} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.1f}s: {e}")
            await sleep(delay)
