"""
Retry mechanism for resilient operations.
"""

import asyncio
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


SleepFunc = Callable[[float], Awaitable[Any]]
RetryPredicate = Callable[[BaseException], bool]


async def retry_async(func: Callable[[], Awaitable[Any]],
                      config: RetryConfig,
                      *,
                      should_retry: RetryPredicate,
                      sleep: Optional[SleepFunc] = None,
                      name: Optional[str] = None) -> Any:
    """Run ``func`` until it succeeds, ``should_retry`` rejects an error, or attempts run out.

    The last exception is re-raised unchanged so callers keep their own
    error taxonomy.
    """
    sleep = sleep or asyncio.sleep
    label = name or getattr(func, "__name__", "operation")
    logger = get_logger(f"retry.{label}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            logger.debug(
                "Retry attempt",
                attempt=attempt,
                max_attempts=config.max_attempts,
                function=label
            )

            result = await func()

            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, function=label)

            return result

        except Exception as e:
            if not should_retry(e):
                raise

            if attempt == config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    function=label,
                    error=str(e)
                )
                raise

            delay = calculate_delay(attempt, config)

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                function=label,
                error=str(e)
            )

            await sleep(delay)

    raise RuntimeError(f"retry_async for {label} called with max_attempts < 1")


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay between retry attempts."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    elif config.backoff_strategy == "fixed":
        delay = config.base_delay
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
