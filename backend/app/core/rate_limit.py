"""
In-process request rate limiter.

Fixed-window buckets keyed by a logical name (e.g. "user:<id>").
State lives on the RateLimiter instance owned by the app, so it is only
consistent within a single process.
"""
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional


@dataclass
class Bucket:
    """Remaining allowance for one key in the current window."""
    tokens: int
    window_started: float


class RateLimiter:
    """Allow at most `limit` requests per key every `interval_seconds`."""

    def __init__(
        self,
        limit: int,
        interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._buckets: Dict[str, Bucket] = {}
        self._lock = Lock()
        self._last_prune = clock()

    def allow(self, bucket_key: str) -> bool:
        """Take one token from the bucket; False when it is empty."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            bucket = self._buckets.get(bucket_key)
            if bucket is None or now - bucket.window_started >= self.interval_seconds:
                bucket = Bucket(tokens=self.limit, window_started=now)
                self._buckets[bucket_key] = bucket

            if bucket.tokens <= 0:
                return False
            bucket.tokens -= 1
            return True

    def _prune(self, now: float) -> None:
        """Drop buckets whose window has ended. Runs at most once per interval."""
        if now - self._last_prune < self.interval_seconds:
            return
        self._last_prune = now
        expired = [
            key for key, bucket in self._buckets.items()
            if now - bucket.window_started >= self.interval_seconds
        ]
        for key in expired:
            del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)

    def remaining(self, bucket_key: str) -> int:
        with self._lock:
            bucket = self._buckets.get(bucket_key)
            if bucket is None or self._clock() - bucket.window_started >= self.interval_seconds:
                return self.limit
            return bucket.tokens

    def reset(self, bucket_key: Optional[str] = None) -> None:
        """Forget one bucket, or all of them."""
        with self._lock:
            if bucket_key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(bucket_key, None)
