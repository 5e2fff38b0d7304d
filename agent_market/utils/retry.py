"""
Timeout and retry helpers for external calls.

WHAT: Bounded timeouts and exponential-backoff retries around collaborator calls
WHY: Every suspension point must be bounded and transient failures retried a few times
HOW: asyncio.wait_for mapped to ExternalCallTimeoutError; retry loop with 2**attempt backoff
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from .exceptions import ExternalCallTimeoutError
from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout: float, collaborator: str) -> T:
    """
    Await a collaborator call with a wall-clock bound.

    Raises:
        ExternalCallTimeoutError: If the call does not finish within timeout seconds
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"{collaborator} call exceeded {timeout}s")
        raise ExternalCallTimeoutError(collaborator, timeout) from e


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    max_retries: int,
    retry_delay: float,
    description: str,
) -> T:
    """
    Run operation, retrying on transient errors with exponential backoff.

    Args:
        operation: Zero-arg coroutine factory (called once per attempt)
        retry_on: Exception types considered transient
        max_retries: Total attempts (at least one)
        retry_delay: Base delay in seconds; attempt n waits retry_delay * 2**n
        description: Used in log lines

    Returns:
        The operation's result

    Raises:
        The last transient error after the final attempt, or any non-transient error immediately
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            logger.warning(f"{description} failed (attempt {attempt + 1}/{attempts}): {e}")
            if attempt == attempts - 1:
                raise
            await asyncio.sleep(retry_delay * (2 ** attempt))
    raise RuntimeError("unreachable")  # pragma: no cover
