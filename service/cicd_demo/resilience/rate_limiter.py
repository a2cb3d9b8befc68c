"""Token bucket rate limiting, per client"""

import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional


@dataclass
class TokenBucket:
    """Token bucket for rate limiting"""

    capacity: int
    refill_rate: float  # tokens per second
    tokens: float = field(init=False)
    last_refill: float = field(init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def __post_init__(self):
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time (must be called with lock held)"""
        now = time.monotonic()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.tokens + elapsed * self.refill_rate, self.capacity)
            self.last_refill = now

    def try_acquire(self, tokens: int = 1) -> bool:
        """Try to acquire tokens"""
        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    def remaining(self) -> int:
        with self._lock:
            self._refill()
            return max(0, int(self.tokens))

    def wait_time(self) -> float:
        """Seconds until one token is available"""
        with self._lock:
            self._refill()
            if self.tokens >= 1:
                return 0.0
            return (1.0 - self.tokens) / self.refill_rate


class RateLimiter:
    """Per-client token buckets with a bounded number of tracked clients"""

    def __init__(
        self,
        requests_per_minute: int,
        refill_rate: Optional[float] = None,
        max_clients: int = 10000,
    ):
        """
        Args:
            requests_per_minute: bucket capacity per client
            refill_rate: tokens per second (defaults to requests_per_minute / 60)
            max_clients: least recently seen clients are forgotten beyond this
        """
        self.requests_per_minute = requests_per_minute
        self.refill_rate = refill_rate if refill_rate is not None else requests_per_minute / 60.0
        self.max_clients = max_clients
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()
        self._lock = Lock()

    def _bucket(self, client_id: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(client_id)
            if bucket is None:
                bucket = TokenBucket(self.requests_per_minute, self.refill_rate)
                self._buckets[client_id] = bucket
                while len(self._buckets) > self.max_clients:
                    self._buckets.popitem(last=False)
            else:
                self._buckets.move_to_end(client_id)
            return bucket

    def allow(self, client_id: str) -> bool:
        """Consume one token for the client if available"""
        return self._bucket(client_id).try_acquire()

    def remaining(self, client_id: str) -> int:
        return self._bucket(client_id).remaining()

    def retry_after(self, client_id: str) -> int:
        """Whole seconds until the client may retry"""
        return max(1, math.ceil(self._bucket(client_id).wait_time()))
