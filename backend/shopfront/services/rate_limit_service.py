"""
Payment Request Rate Limiting

WHY: Payment initiation pushes an STK prompt to a phone or opens a card
checkout. Hammering it is abusive to customers and providers alike, so each
client address gets a small budget per window.

DESIGN:
- Sliding window of request timestamps per key, in process memory
- A lock guards the windows (threaded servers share one limiter per app)
- Single-process only; a multi-process deployment needs a shared store
"""

import threading
import time
from collections import deque


class SlidingWindowRateLimiter:
    def __init__(self, max_requests: int = 5, window_seconds: float = 60, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def _sweep(self, now: float) -> None:
        # Keys are client-supplied; idle ones must not accumulate
        expired = [
            key for key, window in self._hits.items()
            if not window or now - window[-1] >= self.window_seconds
        ]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str) -> bool:
        """
        Record one request for key.

        Returns True if allowed, False if the key is over its budget
        (rejected requests are not recorded). Keys idle for a full window
        are dropped, at most once per window.
        """
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)

            window = self._hits.get(key)
            if window is None:
                window = deque()
                self._hits[key] = window

            while window and now - window[0] >= self.window_seconds:
                window.popleft()

            if len(window) >= self.max_requests:
                return False

            window.append(now)
            return True

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


def client_address(request) -> str:
    """First X-Forwarded-For hop, else X-Real-IP, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote_addr or "unknown"
