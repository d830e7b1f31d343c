from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


async def with_retries(
    call: Callable[[], Awaitable[T | None]],
    *,
    max_retries: int,
    retry_delay: float,
    sleep: Sleep = asyncio.sleep,
    describe: str = "call",
) -> T | None:
    """Run ``call`` once plus up to ``max_retries`` more times.

    A ``None`` result or an exception flagged ``retryable`` triggers another
    attempt after ``retry_delay`` seconds. Other exceptions propagate at once.
    Returns ``None`` when every attempt came back empty; re-raises the last
    retryable error when every attempt failed with one.
    """
    attempts = max(0, max_retries) + 1
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = await call()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            logger.warning("%s failed attempt=%s/%s error=%s", describe, attempt, attempts, exc)
        else:
            if result is not None:
                return result
            last_error = None
            logger.warning("%s returned no result attempt=%s/%s", describe, attempt, attempts)
        if attempt < attempts:
            await sleep(retry_delay)
    if last_error is not None:
        raise last_error
    return None
