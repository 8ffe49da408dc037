import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    max_retries: int = 3,
    delay: float = 0.5,
    backoff: float = 2.0,
    description: str = "operation",
) -> T:
    """Run ``operation`` up to ``max_retries`` times, sleeping with exponential backoff.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")
    attempt = 0
    wait = delay
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except retry_on as exc:
            attempt += 1
            logger.warning("%s failed (attempt %s/%s): %s", description, attempt, max_retries, exc)
            if attempt >= max_retries:
                logger.error("%s failed after %s attempts.", description, max_retries)
                raise
            await asyncio.sleep(wait)
            wait *= backoff
