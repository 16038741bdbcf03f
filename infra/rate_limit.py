"""
Fixed-window rate limiter.

Per-process only. Guards the low-volume pairing approval endpoint, so a
distributed backend is not needed.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_WINDOW_S = 60.0
DEFAULT_MAX_REQUESTS = 30
DEFAULT_PRUNE_THRESHOLD = 1000


@dataclass
class RateLimitBucket:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    ok: bool
    retry_after_sec: int = 0


class FixedWindowRateLimiter:
    """
    Count requests per key in fixed windows.

    The first request from a key opens a window of ``window_s`` seconds; the
    ``max_requests + 1``-th request inside that window is refused with the
    number of seconds left until the window resets (at least 1).
    """

    def __init__(
        self,
        window_s: float = DEFAULT_WINDOW_S,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        prune_threshold: int = DEFAULT_PRUNE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.max_requests = max_requests
        self.prune_threshold = prune_threshold
        self._clock = clock
        self._buckets: Dict[str, RateLimitBucket] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def _prune(self, now: float) -> None:
        expired = [key for key, bucket in self._buckets.items() if now > bucket.reset_at]
        for key in expired:
            del self._buckets[key]

    def check(self, key: Optional[str]) -> RateLimitDecision:
        """Record one request for ``key`` and decide whether it may proceed."""
        key = key or "unknown"
        now = self._clock()

        if len(self._buckets) > self.prune_threshold:
            self._prune(now)

        bucket = self._buckets.get(key)
        if bucket is None or now > bucket.reset_at:
            self._buckets[key] = RateLimitBucket(count=1, reset_at=now + self.window_s)
            return RateLimitDecision(ok=True)

        bucket.count += 1
        if bucket.count > self.max_requests:
            retry_after = max(1, math.ceil(bucket.reset_at - now))
            return RateLimitDecision(ok=False, retry_after_sec=retry_after)
        return RateLimitDecision(ok=True)
