from __future__ import annotations

import threading
import time
from collections.abc import Callable


class LoginRateLimiter:
    """Fixed-window attempt counter keyed by client, held for the life of the app.

    Advisory only: each worker process keeps its own window.
    """

    def __init__(
        self,
        max_attempts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str) -> bool:
        """Record an attempt; False once ``key`` is over the limit for its window."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            self._prune(now)
            return count <= self.max_attempts

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def retry_after(self, key: str) -> int:
        with self._lock:
            entry = self._windows.get(key)
        if not entry:
            return 0
        return max(0, int(self.window_seconds - (self._clock() - entry[0])))

    def _prune(self, now: float) -> None:
        expired = [key for key, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]
