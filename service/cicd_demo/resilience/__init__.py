"""Resilience patterns: retry, rate limiting"""

from .retry import retry, RetryPolicy
from .rate_limiter import RateLimiter, TokenBucket

__all__ = [
    "retry",
    "RetryPolicy",
    "RateLimiter",
    "TokenBucket",
]
