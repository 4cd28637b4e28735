"""Per-client request rate limiting for the HTTP boundary."""

import math
import threading
import time
from typing import Callable, Optional


class RateLimitExceeded(Exception):
    """Raised when a client has used up its window."""

    def __init__(self, client: str, retry_after: int):
        super().__init__(f"Rate limit exceeded for {client}")
        self.client = client
        self.retry_after = retry_after


class FixedWindowRateLimiter:
    """Allows ``limit`` hits per client in each window of ``window`` seconds."""

    def __init__(self, limit: int = 60, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = max(1, int(limit))
        self.window = float(window)
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def _purge_expired(self, now: float) -> None:
        # Caller holds self._lock. Sweeps at most once per window.
        if now - self._last_purge < self.window:
            return
        expired = [client for client, (started, _) in self._windows.items() if now - started >= self.window]
        for client in expired:
            del self._windows[client]
        self._last_purge = now

    def hit(self, client: str) -> int:
        """Count one request.

        Args:
            client: Key identifying the caller.

        Returns:
            int: Requests left in the current window.

        Raises:
            RateLimitExceeded: If the client already used every request of the window.
        """
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            started, count = self._windows.get(client, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            if count >= self.limit:
                retry_after = max(1, math.ceil(self.window - (now - started)))
                raise RateLimitExceeded(client, retry_after)
            self._windows[client] = (started, count + 1)
            return self.limit - count - 1

    def reset(self, client: Optional[str] = None) -> None:
        """Forget the counters of one client, or of all clients."""
        with self._lock:
            if client is None:
                self._windows.clear()
            else:
                self._windows.pop(client, None)
