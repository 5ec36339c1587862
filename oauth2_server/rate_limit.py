"""
Rate limiting. In-memory sliding window per key (client IP).
Applied to POST /auth/token to slow down client-secret guessing.
"""
import math
import threading
import time
from collections.abc import Callable

_WINDOW_SECONDS = 60


class SlidingWindowLimiter:
    """
    Counts hits per key over the last window_seconds. Single-process only; each worker keeps
    its own window.
    """

    def __init__(self, window_seconds: int = _WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1). A limit <= 0 disables the check.
        """
        if limit <= 0:
            return True, None
        now = self.clock()
        with self._lock:
            timestamps = self._hits.setdefault(key, [])
            cutoff = now - self.window_seconds
            timestamps[:] = [t for t in timestamps if t > cutoff]
            if len(timestamps) >= limit:
                oldest = min(timestamps)
                retry_after = max(1, math.ceil(self.window_seconds - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            return True, None

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


token_limiter = SlidingWindowLimiter()
