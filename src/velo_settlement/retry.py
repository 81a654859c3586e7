"""
Retry utilities with exponential backoff.

Used for REST explorer calls (Blockstream, Horizon): each host gets a
few quick retries before EndpointPool moves on to the next one.
JSON-RPC endpoints skip this and fail over immediately.

Usage:
    from velo_settlement.retry import REST_RETRY_CONFIG, retry_async

    response = await retry_async(fetch_utxos, address, config=REST_RETRY_CONFIG)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Optional,
    ParamSpec,
    Type,
    TypeVar,
)

from .constants import RetryDefaults

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) applied to delays
        retryable_exceptions: Exception types that trigger retries
        non_retryable_exceptions: Exception types that are raised immediately
    """

    max_retries: int = RetryDefaults.DEFAULT_MAX_RETRIES
    base_delay: float = RetryDefaults.DEFAULT_BASE_DELAY
    max_delay: float = RetryDefaults.DEFAULT_MAX_DELAY
    exponential_base: float = RetryDefaults.DEFAULT_EXPONENTIAL_BASE
    jitter: float = RetryDefaults.DEFAULT_JITTER
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Delay for a 0-based attempt number, capped and jittered."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)


REST_RETRY_CONFIG = RetryConfig(
    max_retries=RetryDefaults.REST_MAX_RETRIES,
    base_delay=RetryDefaults.REST_BASE_DELAY,
    max_delay=RetryDefaults.REST_MAX_DELAY,
    jitter=0.2,
)


@dataclass
class RetryStats:
    """Statistics about retry execution."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: Optional[BaseException],
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Raises:
        RetryExhausted: If all retry attempts fail
        Exception: Immediately, when the exception is not retryable
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.should_retry(e):
                logger.debug(
                    f"Exception {type(e).__name__} is not retryable, "
                    f"raising immediately"
                )
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception

