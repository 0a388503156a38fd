"""
Circuit breaker for upstream API calls.

After ``failure_threshold`` consecutive failures the breaker opens and calls
fail fast with ``CircuitBreakerOpenException``. Once ``recovery_timeout``
seconds have passed a single trial call is let through (half-open); its
outcome closes the breaker again or re-opens it for another timeout.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised instead of calling through while the breaker is open."""


class CircuitBreaker:
    """Consecutive-failure breaker wrapping async callables."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._clock = clock
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        if self._state == CircuitBreakerState.OPEN and self._clock() - self._opened_at >= self.recovery_timeout:
            self._state = CircuitBreakerState.HALF_OPEN
            self.logger.info("Circuit breaker half-open, allowing a trial call")
        return self._state

    def is_open(self) -> bool:
        return self.state == CircuitBreakerState.OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` unless the breaker is open."""
        state = self.state
        if state == CircuitBreakerState.OPEN or (state == CircuitBreakerState.HALF_OPEN and self._trial_in_flight):
            raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is open")

        trial = state == CircuitBreakerState.HALF_OPEN
        self._trial_in_flight = trial
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._record_failure(trial)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._record_success(trial)
        return result

    def _record_success(self, trial: bool) -> None:
        if trial:
            self.logger.info("Circuit breaker closed after successful trial call")
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0

    def _record_failure(self, trial: bool) -> None:
        self._failure_count += 1
        if trial or self._failure_count >= self.failure_threshold:
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()
            self.logger.warning(
                "Circuit breaker opened",
                failure_count=self._failure_count,
                threshold=self.failure_threshold,
                trial=trial,
            )

    def reset(self) -> None:
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._trial_in_flight = False

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }
