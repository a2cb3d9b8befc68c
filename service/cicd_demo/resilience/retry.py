"""Retry decorators and policies"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Callable, TypeVar, Awaitable, Optional

import httpx

from ..observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry policy configuration"""
    max_attempts: int = 3
    initial_delay: float = 0.2
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Calculate delay before the retry following ``attempt``"""
        base_delay = self.initial_delay * (self.exponential_base ** (attempt - 1))
        delay = min(base_delay, self.max_delay)

        if self.jitter:
            # Up to -25% jitter
            delay *= 0.75 + (random.random() * 0.25)

        return delay

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Retry transport failures and 5xx/429 responses"""
        if attempt >= self.max_attempts:
            return False

        if isinstance(error, httpx.TransportError):
            return True

        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status == 429

        return isinstance(error, (ConnectionError, TimeoutError))


def retry(
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """Decorator for retrying async functions"""
    if policy is None:
        policy = RetryPolicy()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    attempt += 1
                    if not policy.should_retry(attempt, e):
                        raise

                    if on_retry:
                        on_retry(attempt, e)

                    delay = policy.delay(attempt)
                    logger.warning(
                        "Retrying %s after %s (attempt %d, delay %.2fs)",
                        func.__name__, type(e).__name__, attempt, delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator
