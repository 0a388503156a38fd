"""
Tests for the retry policy and circuit breaker wrapped around upstream calls.
"""

import pytest

import shared.retry
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.retry import RetryConfig, RetryError, retry_on_exception


class Throttled(Exception):
    def __init__(self, retry_after=None):
        super().__init__("throttled")
        self.retry_after = retry_after


class TestRetryConfig:
    """Delay computation."""

    def test_exponential_backoff_without_jitter(self):
        config = RetryConfig(base_delay=0.5, max_delay=5.0, jitter=False)

        assert [config.delay_for(n) for n in (1, 2, 3, 4, 5)] == [0.5, 1.0, 2.0, 4.0, 5.0]

    def test_linear_backoff(self):
        config = RetryConfig(base_delay=1.0, jitter=False, backoff_strategy="linear")

        assert config.delay_for(3) == 3.0

    def test_retry_after_hint_wins(self):
        config = RetryConfig(base_delay=0.5, max_delay=30.0)

        assert config.delay_for(1, Throttled(retry_after=7)) == 7.0

    def test_retry_after_hint_is_capped(self):
        config = RetryConfig(max_delay=5.0)

        assert config.delay_for(1, Throttled(retry_after=120)) == 5.0

    def test_jitter_stays_within_ten_percent(self):
        config = RetryConfig(base_delay=1.0)

        for _ in range(20):
            assert 0.9 <= config.delay_for(1) <= 1.1


class TestRetryDecorator:
    """retry_on_exception behaviour."""

    @pytest.fixture(autouse=True)
    def no_delay(self, monkeypatch):
        monkeypatch.setattr(shared.retry, "_calculate_delay", lambda attempt, config: 0.0)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        calls = []

        @retry_on_exception((Throttled,), RetryConfig(max_attempts=3))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise Throttled(retry_after=0)
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_exception(self):
        @retry_on_exception((Throttled,), RetryConfig(max_attempts=2))
        async def always_throttled():
            raise Throttled()

        with pytest.raises(RetryError) as excinfo:
            await always_throttled()

        assert excinfo.value.attempts == 2
        assert isinstance(excinfo.value.last_exception, Throttled)

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        calls = []

        @retry_on_exception((Throttled,), RetryConfig(max_attempts=5))
        async def broken():
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            await broken()

        assert len(calls) == 1

    def test_preserves_function_name(self):
        @retry_on_exception()
        async def list_users():
            return []

        assert list_users.__name__ == "list_users"


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def failing():
    raise RuntimeError("upstream down")


async def succeeding():
    return "ok"


class TestCircuitBreaker:
    """State transitions."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, name="test", clock=clock)

    async def trip(self, breaker):
        for _ in range(breaker.failure_threshold):
            with pytest.raises(RuntimeError):
                await breaker.call(failing)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        await self.trip(breaker)

        assert breaker.is_open()
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(succeeding)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        with pytest.raises(RuntimeError):
            await breaker.call(failing)
        await breaker.call(succeeding)
        with pytest.raises(RuntimeError):
            await breaker.call(failing)

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_successful_trial_call_closes(self, breaker, clock):
        await self.trip(breaker)
        clock.now += 30.0

        assert breaker.state == CircuitBreakerState.HALF_OPEN
        assert await breaker.call(succeeding) == "ok"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_call_reopens(self, breaker, clock):
        await self.trip(breaker)
        clock.now += 31.0

        with pytest.raises(RuntimeError):
            await breaker.call(failing)

        assert breaker.is_open()
        assert breaker.get_state()["state"] == "open"

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        await self.trip(breaker)

        breaker.reset()

        assert await breaker.call(succeeding) == "ok"
