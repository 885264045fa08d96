"""Retry with exponential backoff for calls to unreliable collaborators."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from roster.exceptions import TransientExternalError
from roster.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _sanitize_error_for_logging(error: Exception) -> str:
    """Describe an error without leaking URLs, keys or response bodies."""
    error_type = type(error).__name__

    safe_messages = {
        "TransientExternalError": "Membership source temporarily unavailable",
        "FatalExternalError": "Membership source rejected credentials",
        "TimeoutError": "Operation timed out",
        "OSError": "System I/O error",
    }

    return safe_messages.get(error_type, f"Error of type {error_type}")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Base delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff (2 doubles each time)
        jitter: Whether to add random jitter to delay
        retryable_exceptions: Exception types that should trigger retry
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientExternalError,)
    )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-indexed)."""
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay,
        )

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    operation: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` and retry it on retryable exceptions.

    Anything outside ``config.retryable_exceptions`` propagates on the
    first occurrence. When the retry budget is spent the last error is
    re-raised.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except config.retryable_exceptions as e:
            last_exception = e
            if attempt < config.max_retries:
                delay = config.calculate_delay(attempt)
                logger.warning(
                    "retry_attempt",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=config.max_retries,
                    delay=round(delay, 3),
                    error_type=type(e).__name__,
                    error_msg=_sanitize_error_for_logging(e),
                )
                await sleep(delay)
            else:
                logger.error(
                    "retry_exhausted",
                    operation=operation,
                    max_retries=config.max_retries,
                    error_type=type(e).__name__,
                    error_msg=_sanitize_error_for_logging(e),
                )

    if last_exception:
        raise last_exception
    raise RuntimeError("Unexpected state: no result and no exception")
