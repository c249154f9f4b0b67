"""
Per-caller request throttling for the signing and access-control endpoints.

Each key keeps the timestamps of its recent hits; a hit is admitted while
fewer than `rpm` of them fall inside the trailing window. Keys with no hits
left in the window are forgotten.
"""

import threading
import time
from collections import deque
from typing import Deque, Dict, Optional


class RateLimiter:

    def __init__(self, rpm: int, window_seconds: int = 60):
        self.rpm = max(1, rpm)
        self.window_seconds = window_seconds
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def _live_hits(self, key: str, now: float) -> Optional[Deque[float]]:
        """Hits for `key` inside the window, or None (and the key dropped) if there are none."""
        hits = self._hits.get(key)
        if hits is None:
            return None
        cutoff = now - self.window_seconds
        while hits and hits[0] < cutoff:
            hits.popleft()
        if not hits:
            del self._hits[key]
            return None
        return hits

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._live_hits(key, now)

    def allow(self, key: str) -> bool:
        """Record a hit for `key` and report whether it is within the limit."""
        now = time.monotonic()
        with self._lock:
            self._sweep(now)
            hits = self._live_hits(key, now)
            if hits is None:
                self._hits[key] = deque([now])
                return True
            if len(hits) >= self.rpm:
                return False
            hits.append(now)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until `key` may be admitted again; 0 when it already may."""
        now = time.monotonic()
        with self._lock:
            hits = self._live_hits(key, now)
            if hits is None or len(hits) < self.rpm:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
