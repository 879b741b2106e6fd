from __future__ import annotations

from typing import Dict, Optional


class RateLimitExceeded(Exception):
    pass


class FixedWindowRateLimiter:
    """Counts events per key inside fixed windows of ``window_ms``."""

    def __init__(self, limit: int, window_ms: int = 60_000) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._windows: Dict[str, tuple[int, int]] = {}
        self._last_sweep_ms: Optional[int] = None

    def allow(self, key: str, now_ms: int) -> bool:
        self._evict_expired(now_ms)
        window_start, count = self._windows.get(key, (now_ms, 0))
        if now_ms - window_start >= self.window_ms:
            window_start, count = now_ms, 0
        count += 1
        self._windows[key] = (window_start, count)
        return count <= self.limit

    def _evict_expired(self, now_ms: int) -> None:
        if self._last_sweep_ms is not None and now_ms - self._last_sweep_ms < self.window_ms:
            return
        self._last_sweep_ms = now_ms
        expired = [key for key, (start, _) in self._windows.items() if now_ms - start >= self.window_ms]
        for key in expired:
            del self._windows[key]

    def check(self, key: str, now_ms: int, message: str = "rate limit exceeded") -> None:
        if not self.allow(key, now_ms):
            raise RateLimitExceeded(message)
