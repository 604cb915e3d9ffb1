"""Utility decorators shared by the remote clients."""

import time
from functools import wraps
from typing import Any, Callable, TypeVar

from utils.logging import logger

T = TypeVar("T")


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry a call on the given exceptions, doubling the wait after each failure.

    The final failure is re-raised unchanged.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            wait = delay
            for attempt in range(1, max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as exc:
                    logger.warning(
                        "%s attempt %d/%d failed, retrying in %.1fs: %s",
                        func.__name__,
                        attempt,
                        max_attempts,
                        wait,
                        exc,
                    )
                    time.sleep(wait)
                    wait *= 2
            return func(*args, **kwargs)

        return wrapper

    return decorator


def log_execution(func: Callable[..., T]) -> Callable[..., T]:
    """Log the duration of a remote call, and its failure if it raises."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        started = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            logger.error("%s failed after %.2fs: %s", func.__name__, time.monotonic() - started, exc)
            raise
        logger.debug("%s completed in %.2fs", func.__name__, time.monotonic() - started)
        return result

    return wrapper
