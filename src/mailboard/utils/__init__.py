"""Utility functions for Mailboard."""

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from mailboard.exceptions import TransientSyncError

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def retry_on_transient(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
) -> Callable[[F], F]:
    """Decorator to retry a coroutine function on ``TransientSyncError``.

    Any other exception propagates immediately. ``max_attempts`` and ``delay`` may be
    overridden per instance through ``max_retries`` and ``retry_delay_seconds``
    attributes on the bound object's ``settings``.

    Args:
        max_attempts: Total number of attempts, including the first.
        delay: Initial delay between attempts in seconds.
        backoff: Multiplier for delay after each attempt.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempts, current_delay = _limits(args, max_attempts, delay)

            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except TransientSyncError as e:
                    if attempt >= attempts:
                        logger.error(
                            "function_retry_exhausted",
                            function=func.__name__,
                            attempts=attempts,
                            error=str(e),
                        )
                        raise
                    logger.warning(
                        "function_retry",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=attempts,
                        delay=current_delay,
                        error=str(e),
                    )
                    await asyncio.sleep(current_delay)
                    current_delay *= backoff

        return wrapper  # type: ignore

    return decorator


def _limits(args: tuple[Any, ...], max_attempts: int, delay: float) -> tuple[int, float]:
    settings = getattr(args[0], "settings", None) if args else None
    if settings is None:
        return max_attempts, delay
    return (
        max(1, int(getattr(settings, "max_retries", max_attempts))),
        float(getattr(settings, "retry_delay_seconds", delay)),
    )
