"""Bounded exponential-backoff retry for remote writes."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from trashsync.config import settings
from trashsync.exceptions import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = None,
    base_delay: float = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "remote call",
) -> T:
    """Call ``fn`` and retry transient failures (429/5xx).

    Waits ``base_delay * 2**attempt`` before each retry, so with the defaults
    a call is tried at most four times with delays of 1s, 2s and 4s.
    Anything that is not transient (401/403/404, timeouts, unreachable) is
    raised immediately.
    """
    max_retries = settings.max_retries if max_retries is None else max_retries
    base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay

    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_retries:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"{description} failed ({e}), retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{max_retries})"
            )
            await sleep(delay)
            attempt += 1
