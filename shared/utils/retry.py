"""
Log Pulse - Retry Utilities
===========================

Exponential backoff for operations that can fail transiently, chiefly
store writes: a locked SQLite file or a dropped connection should not abort
a long import on the first try.

Usage:
    from shared.utils.retry import retry_async, RetryConfig

    policy = RetryConfig(max_attempts=3, base_delay=0.1,
                         retryable_exceptions=(StoreFailure,))
    written = await retry_async(write_batch, rows, config=policy)
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, TypeVar, Any, Optional
from collections.abc import Awaitable

from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy.

    Attributes:
        max_attempts: Total tries, the first one included
        base_delay: Pause before the first retry, in seconds
        max_delay: Upper bound for any single pause
        backoff_multiplier: Growth factor between consecutive pauses
        retryable_exceptions: Only these exception types are retried
    """
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)

    def delay_for(self, retry_number: int) -> float:
        """Pause before the n-th retry (1 for the first retry)."""
        delay = self.base_delay * (self.backoff_multiplier ** (retry_number - 1))
        return min(delay, self.max_delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any
) -> T:
    """
    Call ``func(*args, **kwargs)`` under a retry policy.

    Exceptions outside ``config.retryable_exceptions`` propagate on the
    first failure; once attempts run out the last error is re-raised as is.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(
                    f"{name} failed after {attempt} attempts: {e}",
                    extra={"operation": name, "attempts": attempt, "error": str(e)}
                )
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                f"{name} failed (attempt {attempt}/{config.max_attempts}), retrying in {delay:.2f}s",
                extra={"operation": name, "attempt": attempt, "delay": delay, "error": str(e)}
            )
            await asyncio.sleep(delay)
            attempt += 1
