"""Token-bucket rate limiting keyed by plugin identity."""

import threading
import time
from collections.abc import Callable


class TokenBucket:
    """Token bucket refilled continuously."""

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize a full bucket.

        Args:
            capacity: Maximum tokens
            refill_per_second: Tokens added per second
            clock: Monotonic time source
        """
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._clock = clock
        self._tokens = float(capacity)
        self._last_update = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._last_update = now

    def try_acquire(self, tokens: int = 1) -> tuple[bool, float]:
        """Try to take tokens.

        Returns:
            (success, seconds until enough tokens are available)
        """
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True, 0.0

            needed = tokens - self._tokens
            return False, needed / self.refill_per_second

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


class RateLimiter:
    """Per-plugin token buckets with a per-minute budget."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def configure(self, plugin: str, per_minute: int, capacity: int | None = None) -> TokenBucket:
        """Create a fresh, full bucket for a plugin.

        Args:
            plugin: Plugin identity
            per_minute: Sustained budget; tokens refill at this rate
            capacity: Burst size (defaults to ``per_minute``)
        """
        bucket = TokenBucket(
            capacity=capacity or per_minute,
            refill_per_second=per_minute / 60.0,
            clock=self._clock,
        )
        self._buckets[plugin] = bucket
        return bucket

    def remove(self, plugin: str) -> None:
        self._buckets.pop(plugin, None)

    def try_acquire(self, plugin: str) -> tuple[bool, float]:
        """Take one token from a plugin's bucket.

        Plugins without a configured bucket are refused.
        """
        bucket = self._buckets.get(plugin)
        if bucket is None:
            return False, 0.0
        return bucket.try_acquire()
