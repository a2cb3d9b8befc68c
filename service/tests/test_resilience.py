"""Tests for resilience patterns"""

import pytest
import httpx
from cicd_demo.resilience import (
    RetryPolicy,
    RateLimiter,
    TokenBucket,
    retry,
)


def _status_error(status_code):
    request = httpx.Request("GET", "https://example.com")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


class TestRetryPolicy:
    """Test retry policies"""

    def test_exponential_backoff_retry(self):
        """Test default exponential backoff policy"""
        policy = RetryPolicy(
            max_attempts=3,
            initial_delay=1.0,
            max_delay=10.0,
        )

        assert policy.max_attempts == 3
        assert policy.should_retry(1, ConnectionError()) is True
        assert policy.should_retry(3, ConnectionError()) is False

        delay = policy.delay(1)
        assert 0.75 <= delay <= 1.0  # With jitter

    def test_delay_grows_and_caps(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=3.0, jitter=False)
        assert policy.delay(1) == 1.0
        assert policy.delay(2) == 2.0
        assert policy.delay(3) == 3.0
        assert policy.delay(10) == 3.0

    @pytest.mark.parametrize("error,expected", [
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(404), False),
        (TimeoutError(), True),
        (ValueError("bad input"), False),
    ])
    def test_retryable_errors(self, error, expected):
        assert RetryPolicy().should_retry(1, error) is expected

    @pytest.mark.asyncio
    async def test_retry_decorator(self):
        """Test retry decorator"""
        attempt_count = 0
        retried = []

        @retry(
            policy=RetryPolicy(max_attempts=3, initial_delay=0.01),
            on_retry=lambda attempt, error: retried.append(attempt),
        )
        async def failing_function():
            nonlocal attempt_count
            attempt_count += 1
            if attempt_count < 3:
                raise ConnectionError("Temporary failure")
            return "success"

        result = await failing_function()
        assert result == "success"
        assert attempt_count == 3
        assert retried == [1, 2]

    @pytest.mark.asyncio
    async def test_retry_gives_up(self):
        attempt_count = 0

        @retry(policy=RetryPolicy(max_attempts=2, initial_delay=0.01))
        async def always_failing():
            nonlocal attempt_count
            attempt_count += 1
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await always_failing()
        assert attempt_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        attempt_count = 0

        @retry(policy=RetryPolicy(max_attempts=5, initial_delay=0.01))
        async def invalid():
            nonlocal attempt_count
            attempt_count += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await invalid()
        assert attempt_count == 1


class TestRateLimiter:
    """Test rate limiter"""

    def test_token_bucket(self):
        """Test token bucket"""
        bucket = TokenBucket(capacity=10, refill_rate=1.0)

        # Should be able to acquire up to capacity
        for _ in range(10):
            assert bucket.try_acquire() is True

        # Should fail after capacity
        assert bucket.try_acquire() is False
        assert bucket.wait_time() > 0

    def test_limits_per_client(self):
        limiter = RateLimiter(requests_per_minute=2, refill_rate=0.0001)

        assert limiter.allow("10.0.0.1")
        assert limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")
        assert limiter.allow("10.0.0.2")
        assert limiter.remaining("10.0.0.1") == 0
        assert limiter.retry_after("10.0.0.1") >= 1

    def test_forgets_least_recent_clients(self):
        limiter = RateLimiter(requests_per_minute=1, refill_rate=0.0001, max_clients=2)

        assert limiter.allow("a")
        assert limiter.allow("b")
        assert limiter.allow("c")
        # "a" was evicted and starts with a full bucket again
        assert limiter.allow("a")


@pytest.mark.asyncio
async def test_retry_defaults_to_standard_policy():
    attempt_count = 0

    @retry()
    async def flaky():
        nonlocal attempt_count
        attempt_count += 1
        if attempt_count < 2:
            raise ConnectionError("Temporary failure")
        return "success"

    assert await flaky() == "success"
    assert attempt_count == 2
