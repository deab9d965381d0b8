"""
In-memory sliding-window rate limiter.
"""
import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Counts recorded hits per key over the last ``window_seconds``.

    Checking and recording are separate so callers can count only the
    requests they care about, e.g. failed payment attempts.
    """

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def _cleanup(self, key: str, now: float):
        cutoff = now - self.window_seconds
        self._hits[key] = [ts for ts in self._hits[key] if ts > cutoff]

    def is_allowed(self, key: str) -> bool:
        with self._lock:
            self._cleanup(key, self.clock())
            return len(self._hits[key]) < self.max_requests

    def record(self, key: str):
        with self._lock:
            now = self.clock()
            self._cleanup(key, now)
            self._hits[key].append(now)

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest recorded hit leaves the window."""
        with self._lock:
            if not self._hits[key]:
                return 0
            oldest = min(self._hits[key])
            return max(1, int(oldest + self.window_seconds - self.clock()) + 1)

    def reset(self):
        with self._lock:
            self._hits.clear()
