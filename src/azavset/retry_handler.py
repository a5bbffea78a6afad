"""Retry logic with exponential backoff for transient failures.

Only read-only Azure CLI calls (show, export) are ever retried, and only when
az_max_attempts is raised above its default of 1. Destructive calls run once.

Usage:
    @retry_with_exponential_backoff(max_attempts=3)
    def export():
        ...
"""

import functools
import logging
import random
import subprocess
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Patterns whose trailing value must not reach the logs
SENSITIVE_PATTERNS = ("secret=", "password=", "token=", "key=", "authorization:")


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] = (
        subprocess.CalledProcessError,
        subprocess.TimeoutExpired,
    ),
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (1 disables retries)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add ±25% random jitter to delays (default: True)
        retryable_exceptions: Exception types that trigger a retry

    Returns:
        Decorated function that retries on the given exceptions
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 1:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )
                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        if max_attempts > 1:
                            logger.error(
                                f"{func.__name__} failed after {max_attempts} attempts: "
                                f"{safe_error_message(e)}"
                            )
                        raise

                    actual_delay = delay
                    if jitter:
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)
                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {safe_error_message(e)}"
                    )
                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{func.__name__} called with max_attempts={max_attempts}")

        return wrapper  # type: ignore

    return decorator


def _az_error_text(stderr: str) -> str:
    """Drop az's leading WARNING: lines so the ERROR: payload comes first."""
    lines = [line for line in stderr.strip().splitlines() if not line.startswith("WARNING:")]
    for index, line in enumerate(lines):
        if line.startswith("ERROR:"):
            return "\n".join(lines[index:]).strip()
    return "\n".join(lines).strip() or stderr.strip()


def safe_error_message(exception: Exception, max_length: int = 200) -> str:
    """Create an error message safe for logging.

    Truncates long messages and masks values after credential-like patterns.
    For CalledProcessError the captured stderr is used since str(e) only
    carries the command line; az WARNING: lines ahead of the error are dropped.

    Args:
        exception: Exception to describe
        max_length: Characters kept before truncating (default: 200)
    """
    if isinstance(exception, subprocess.CalledProcessError) and exception.stderr:
        error_str = _az_error_text(str(exception.stderr))
    else:
        error_str = str(exception)

    if len(error_str) > max_length:
        error_str = error_str[:max_length] + "..."

    lowered = error_str.lower()
    for pattern in SENSITIVE_PATTERNS:
        index = lowered.find(pattern)
        if index >= 0:
            error_str = error_str[:index] + f"{pattern}***"
            lowered = error_str.lower()

    return error_str


__all__ = ["retry_with_exponential_backoff", "safe_error_message"]
