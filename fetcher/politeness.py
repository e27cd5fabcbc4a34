"""Per-host request accounting: a lock-scoped counter table with window expiry."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class HostWindow:
    """Request count for one host inside the current window."""

    count: int
    expires_at: float


class HostRateLimiter:
    """Enforce a per-host request ceiling over a fixed counting window.

    The check-and-increment in `try_acquire` is atomic across threads, so
    concurrent campaigns targeting the same host can never overrun the ceiling.
    """

    def __init__(
        self,
        window_seconds: float,
        default_ceiling: int,
        clock_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize window policy with an optional test-time clock hook."""
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if default_ceiling < 0:
            raise ValueError("default_ceiling must be >= 0")

        self.window_seconds = window_seconds
        self.default_ceiling = default_ceiling

        self._clock = clock_fn or time.monotonic
        self._lock = threading.Lock()
        self._windows: dict[str, HostWindow] = {}

    def try_acquire(self, host: str, ceiling: int | None = None) -> bool:
        """Count one request for `host` if the ceiling allows it."""
        key = host.lower()
        limit = self.default_ceiling if ceiling is None else ceiling

        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or window.expires_at <= now:
                window = HostWindow(count=0, expires_at=now + self.window_seconds)
                self._windows[key] = window
            if window.count >= limit:
                return False
            window.count += 1
            return True

    def current_count(self, host: str) -> int:
        """Requests counted for `host` in its live window (0 when expired)."""
        with self._lock:
            window = self._windows.get(host.lower())
            if window is None or window.expires_at <= self._clock():
                return 0
            return window.count

    def purge_expired(self) -> int:
        """Drop expired windows; returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [host for host, window in self._windows.items() if window.expires_at <= now]
            for host in expired:
                del self._windows[host]
            return len(expired)
