"""Exponential backoff helpers for transient provider failures."""

from __future__ import annotations

import asyncio
import functools
import random
from typing import Callable

import structlog

logger = structlog.get_logger()


def backoff_delay(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    maximum: float = 30.0,
    jitter: bool = True,
) -> float:
    """Delay before retry number *attempt* (1-based).

    base * factor^(attempt - 1), capped at *maximum*, plus up to 10% jitter
    so retries from many runs do not line up.
    """
    if base <= 0:
        return 0.0
    delay = min(base * (factor ** (attempt - 1)), maximum)
    if jitter:
        delay += random.uniform(0, delay * 0.1)
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    base: float = 0.5,
    factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable:
    """Decorator that retries an async function with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts after the first failure.
        base: Delay before the first retry, in seconds.
        factor: Multiplier applied to the delay on each successive retry.
        exceptions: Tuple of exception types that trigger a retry.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:
                    if attempt == max_retries:
                        logger.warning(
                            "retry_exhausted",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(exc),
                        )
                        raise
                    delay = backoff_delay(attempt + 1, base=base, factor=factor)
                    logger.info(
                        "retry_attempt",
                        func=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=round(delay, 2),
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
