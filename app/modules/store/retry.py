import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from app.config import get_settings
from app.modules.store.base import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    description: str,
    attempts: int | None = None,
    delay: float | None = None,
) -> T:
    """Run `operation`, retrying persistence failures a bounded number of times.

    Only StoreError is retried; the last one is re-raised once attempts run out.
    """
    settings = get_settings()
    attempts = attempts or settings.persistence_retry_attempts
    delay = settings.persistence_retry_delay_seconds if delay is None else delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StoreError as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, e)
                raise
            logger.warning("%s failed (attempt %d/%d): %s", description, attempt, attempts, e)
            await asyncio.sleep(delay * attempt)
