"""Per-client request budget for the public coupon check endpoints."""

import time
from collections import defaultdict, deque
from threading import Lock


class RateLimiter:
    """Sliding-window limiter keyed by client.

    Each key keeps the timestamps of its accepted requests inside the window,
    oldest first. State lives in this process only.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _expire(self, hits: deque[float], now: float) -> None:
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

    def is_allowed(self, key: str) -> bool:
        """Record a request for ``key`` unless its budget is spent."""
        now = time.monotonic()
        with self._lock:
            hits = self._hits[key]
            self._expire(hits, now)
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` can be served again; 0 if it can be now."""
        now = time.monotonic()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0.0
            self._expire(hits, now)
            if len(hits) < self.max_requests:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
