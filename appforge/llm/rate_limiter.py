"""Fixed-window admission control for outbound backend requests.

The window restarts lazily: every public call first checks whether
``period_seconds`` have elapsed since the window opened and, if so, zeroes
the count and reopens the window at "now" before answering. A query made
after a long idle period therefore always admits.

Reservations let a caller hold a slot across a network exchange without
recording it as an admission until the exchange succeeds.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("appforge.llm.rate_limiter")


class RateLimiter:
    """Admit at most ``max_requests`` per ``period_seconds`` window.

    All state is guarded by a single lock, so instances may be shared by
    any number of clients and pipeline workers in the same process.
    """

    def __init__(
        self,
        max_requests: int = 1,
        period_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if period_seconds <= 0:
            raise ValueError("period_seconds must be > 0")
        self.max_requests = max_requests
        self.period_seconds = period_seconds
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._window_start = self._clock()
        self._count = 0
        self._pending = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_admit(self) -> bool:
        with self._lock:
            self._roll_window()
            return self._count + self._pending < self.max_requests

    def remaining(self) -> int:
        with self._lock:
            self._roll_window()
            return max(0, self.max_requests - self._count - self._pending)

    def wait_time_ms(self) -> int:
        """Milliseconds until the current window closes (0 once it has)."""
        with self._lock:
            elapsed = self._clock() - self._window_start
            if elapsed >= self.period_seconds:
                return 0
            return math.ceil((self.period_seconds - elapsed) * 1000)

    def window_reset_seconds(self) -> int:
        return self.wait_time_ms() // 1000

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def record_admission(self) -> None:
        with self._lock:
            self._roll_window()
            self._count += 1

    def try_reserve(self) -> bool:
        """Atomically check admission and hold a slot if one is free."""
        with self._lock:
            self._roll_window()
            if self._count + self._pending >= self.max_requests:
                logger.info(
                    "Admission refused: %d/%d used, window resets in %.1fs",
                    self._count + self._pending,
                    self.max_requests,
                    max(0.0, self.period_seconds - (self._clock() - self._window_start)),
                )
                return False
            self._pending += 1
            return True

    def commit_reservation(self) -> None:
        """Turn a held slot into a recorded admission."""
        with self._lock:
            self._pending = max(0, self._pending - 1)
            self._roll_window()
            self._count += 1

    def release_reservation(self) -> None:
        with self._lock:
            self._pending = max(0, self._pending - 1)

    def reset(self) -> None:
        with self._lock:
            self._count = 0
            self._pending = 0
            self._window_start = self._clock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _roll_window(self) -> None:
        # Caller holds self._lock.
        now = self._clock()
        if now - self._window_start >= self.period_seconds:
            self._window_start = now
            self._count = 0
