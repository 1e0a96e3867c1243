"""Bounded retry for backend writes."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from roomsync.core.exceptions import BackendError

R = TypeVar("R")

logger = logging.getLogger(__name__)


async def retry_async(
    operation: Callable[[], Awaitable[R]],
    *,
    refresh: Optional[Callable[[], Awaitable[object]]] = None,
    max_attempts: int = 2,
    exceptions: tuple[type[Exception], ...] = (BackendError, ),
    name: Optional[str] = None,
) -> R:
    """Run ``operation`` up to ``max_attempts`` times.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        refresh: Coroutine factory run between a failure and the next attempt,
            e.g. a session/presence refresh
        max_attempts: Total attempts, the default allows exactly one retry
        exceptions: Exceptions that trigger a retry, anything else propagates
        name: Label for log lines

    Return:
        The result of the first successful attempt

    Raises:
        The exception of the last attempt once attempts are exhausted.
    """
    label = name or getattr(operation, "__name__", "operation")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except exceptions as e:
            if attempt >= max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{label} attempt {attempt} failed: {e}. Retrying...")
            if refresh is not None:
                await refresh()
