"""
Sliding-window record of upstream rejections (HTTP 429) per endpoint.

Purely observational: nothing here throttles or delays outgoing requests.
"""

import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

from gateway.vars import RATE_LIMIT_WINDOW


class RateLimitTracker:
    def __init__(
        self,
        window_seconds: float = RATE_LIMIT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[float]] = defaultdict(deque)

    def record(self, endpoint: str) -> int:
        """Record a rejection now and return the resulting window size."""
        with self._lock:
            now = self._clock()
            window = self._windows[endpoint]
            window.append(now)
            self._prune(window, now)
            return len(window)

    def count(self, endpoint: str) -> int:
        with self._lock:
            window = self._windows.get(endpoint)
            if not window:
                return 0
            self._prune(window, self._clock())
            return len(window)

    def _prune(self, window: Deque[float], now: float) -> None:
        while window and (now - window[0]) >= self.window_seconds:
            window.popleft()
