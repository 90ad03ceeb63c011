"""In-process sliding window limiter, keyed per caller.

Counts live in this process only, like the socket registry in ``ws.ws_manager``.
"""
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class RateLimiter:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    def reset(self):
        with self._lock:
            self._hits.clear()

    def allow(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Record a hit for ``key`` unless ``limit`` hits already fall inside the window."""
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = max(1, int(hits[0] + window_seconds - now + 0.999))
                return RateLimitResult(False, limit, 0, retry_after)
            hits.append(now)
            return RateLimitResult(True, limit, limit - len(hits), 0)


default_rate_limiter = RateLimiter()
