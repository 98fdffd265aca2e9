"""Fixed-window request counting per client address."""

import threading
import time
from typing import Callable, Dict, Tuple

TOO_MANY_REQUESTS = "Too many requests from this IP, please try again later."


class FixedWindowLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = threading.Lock()
        # client -> (window start, requests seen in that window)
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._next_sweep = clock() + window_seconds

    def hit(self, client: str) -> bool:
        """Count one request; False once the client is over its limit."""
        now = self.clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            started, count = self._windows.get(client, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[client] = (started, count)
        return count <= self.limit

    def _sweep(self, now: float) -> None:
        self._windows = {
            client: window
            for client, window in self._windows.items()
            if now - window[0] < self.window_seconds
        }
        self._next_sweep = now + self.window_seconds

    def __len__(self) -> int:
        return len(self._windows)
