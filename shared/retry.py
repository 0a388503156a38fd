"""
Retry policy for upstream API calls.

PagerDuty throttles with HTTP 429 and usually says how long to back off in a
``Retry-After`` header. Exceptions that carry a ``retry_after`` attribute
(seconds) override the computed backoff for that attempt, capped at
``max_delay``.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    backoff_strategy: str = "exponential"

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        hinted = getattr(exc, "retry_after", None)
        if hinted is not None:
            return min(max(0.0, float(hinted)), self.max_delay)
        return _calculate_delay(attempt, self)


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    config: Optional[RetryConfig] = None,
) -> Callable:
    """Decorator retrying an async function on the given exceptions.

    Raises ``RetryError`` wrapping the last exception once ``max_attempts``
    calls have failed. Exceptions outside ``exceptions`` propagate at once.
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        logger = get_logger(f"retry.{func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempts=attempt,
                            function=func.__name__,
                            error=str(e),
                        )
                        raise RetryError(
                            f"{func.__name__} failed after {attempt} attempts",
                            last_exception=e,
                            attempts=attempt,
                        ) from e

                    delay = config.delay_for(attempt, e)
                    logger.warning(
                        "Attempt failed, retrying",
                        attempt=attempt,
                        delay=round(delay, 3),
                        function=func.__name__,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info("Retry succeeded", attempt=attempt, function=func.__name__)
                return result

        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff for the given attempt under the configured strategy."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)
    if config.jitter:
        delay += random.uniform(-0.1 * delay, 0.1 * delay)
    return max(0.0, delay)
