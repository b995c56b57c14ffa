"""
Retry utilities for handling transient failures.

Provides exponential backoff with jitter for the publisher loop and the
reconciliation job.

This module provides:
- RetryConfig: Configuration for retry behavior
- RetryError: Exception raised when all retries are exhausted
- calculate_backoff: Calculate delay with exponential backoff and jitter
- is_retryable_exception: Check an exception against the transient set
- retry_async: Retry an async operation with exponential backoff
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from outboxrelay.exceptions import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Exceptions worth retrying; claim-and-mark is transactional so a retry never loses rows
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransientStorageError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        initial_delay: Initial delay in seconds before first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Fraction of delay to add as random jitter (0-1)

    Example:
        >>> config = RetryConfig(max_retries=5, initial_delay=0.5, max_delay=30.0)
    """

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(
                f"max_retries must be >= 0, got {self.max_retries}. Use 0 for no retries."
            )

        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {self.initial_delay}.")

        if self.max_delay <= 0:
            raise ValueError(f"max_delay must be positive, got {self.max_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1.0, got {self.exponential_base}.")

        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")


class RetryError(Exception):
    """
    Raised when all retry attempts fail.

    Attributes:
        attempts: Number of attempts made
        last_error: The last exception that was raised
    """

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds

    Example:
        >>> config = RetryConfig(initial_delay=1.0, max_delay=60.0)
        >>> delay = calculate_backoff(0, config)  # ~1s
        >>> delay = calculate_backoff(3, config)  # ~8s
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    jitter_range = delay * config.jitter
    delay += random.uniform(-jitter_range, jitter_range)  # nosec B311 - not crypto

    return max(0, delay)


def is_retryable_exception(
    exception: BaseException,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> bool:
    """Check if an exception is retryable."""
    return isinstance(exception, retryable_exceptions)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
) -> T:
    """
    Retry an async operation with exponential backoff.

    Args:
        operation: Async function to retry
        config: Retry configuration (uses defaults if None)
        retryable_exceptions: Exception types to retry on
        operation_name: Name for logging purposes

    Returns:
        Result of successful operation

    Raises:
        RetryError: If all retries exhausted
        Exception: Non-retryable exceptions are raised immediately
    """
    config = config or RetryConfig()
    last_error: Exception | None = None
    attempts = 0

    for attempt in range(config.max_retries + 1):
        attempts += 1
        try:
            result = await operation()
            if attempt > 0:
                logger.info(
                    "Operation %s succeeded after retry",
                    operation_name,
                    extra={"operation": operation_name, "attempt": attempt + 1},
                )
            return result

        except retryable_exceptions as e:
            last_error = e
            if attempt < config.max_retries:
                delay = calculate_backoff(attempt, config)
                logger.warning(
                    "Retrying %s after failure",
                    operation_name,
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "max_retries": config.max_retries,
                        "delay_seconds": delay,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "All retries exhausted for %s",
                    operation_name,
                    extra={
                        "operation": operation_name,
                        "attempts": attempts,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

    assert last_error is not None
    raise RetryError(
        f"Failed after {attempts} attempts: {last_error}",
        attempts=attempts,
        last_error=last_error,
    )


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "RetryConfig",
    "RetryError",
    "calculate_backoff",
    "is_retryable_exception",
    "retry_async",
]
