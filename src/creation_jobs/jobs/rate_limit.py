"""Rolling-window admission control shared by the threads of one worker pool."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from typing import TypeVar

from creation_jobs.config import RateLimit

T = TypeVar("T")


class RollingWindowLimiter:
    """Admit at most ``ops_per_window`` successful operations per rolling window.

    Only operations that actually produce a value consume budget, so an empty
    poll of the queue never starves later claims.
    """

    def __init__(
        self,
        *,
        ops_per_window: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ops_per_window <= 0:
            raise ValueError("ops_per_window must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.ops_per_window = ops_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._admitted: deque[float] = deque()
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        rate_limit: RateLimit,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> RollingWindowLimiter:
        return cls(
            ops_per_window=rate_limit.ops_per_window,
            window_seconds=rate_limit.window_seconds,
            clock=clock,
        )

    def try_acquire(self, action: Callable[[], T | None]) -> tuple[T | None, float]:
        """Run ``action`` if the window has room.

        Returns ``(value, 0.0)`` when the action ran, and ``(None, retry_after)``
        when the window is full. ``action`` runs under the limiter lock, so the
        admission check and the recorded timestamp cannot interleave with
        another thread's claim.
        """

        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._admitted) >= self.ops_per_window:
                retry_after = self._admitted[0] + self.window_seconds - now
                return None, max(retry_after, 0.0)
            value = action()
            if value is not None:
                self._admitted.append(self._clock())
            return value, 0.0

    def in_window(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._admitted)

    def _prune(self, now: float) -> None:
        while self._admitted and self._admitted[0] + self.window_seconds <= now:
            self._admitted.popleft()
