"""
Retry helpers built on tenacity.

Used for the bounded polling steps of the bootstrap path (waiting for MySQL
to accept connections) where exhaustion must surface as a typed error.
"""

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    retry_if_exception_type,
    before_sleep_log,
)
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StillWaiting(Exception):
    """Raised by a poll function whose condition is not met yet."""


def create_retry_decorator(
    retryable_exceptions: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError),
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
) -> Callable:
    """
    Create a retry decorator with exponential backoff.

    Example:
        >>> @create_retry_decorator(max_attempts=5)
        ... async def pull():
        ...     ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def poll_until(
    check: Callable[[], Awaitable[T]],
    max_attempts: int,
    interval_seconds: float,
) -> T:
    """
    Call ``check`` until it returns without raising ``StillWaiting``.

    Waits a fixed interval between attempts. Raises ``RetryError`` once
    ``max_attempts`` is exhausted; any other exception propagates immediately.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval_seconds),
        retry=retry_if_exception_type(StillWaiting),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
    ):
        with attempt:
            return await check()
    raise RetryError(None)  # pragma: no cover - AsyncRetrying raises first


__all__ = ["StillWaiting", "RetryError", "create_retry_decorator", "poll_until"]
