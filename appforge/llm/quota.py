"""Token-quota accounting for backend calls.

Tracks estimated token consumption against a daily ceiling and a rolling
one-minute ceiling. Checks never mutate; debits happen only after a
request was admitted and the backend exchange succeeded. Committed debits
can be shadow-logged to JSONL for later inspection.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger("appforge.llm.quota")


def _utc_today() -> date:
    return datetime.now(UTC).date()


class QuotaTracker:
    """Daily and per-minute token budget with check-then-commit semantics.

    Usage:
        quota = QuotaTracker(daily_limit=2_000_000, minute_limit=123_999)
        units = quota.estimate_units(payload)
        if quota.try_reserve(units):
            ...  # call the backend
            quota.commit(units)   # or quota.release(units) on failure
    """

    def __init__(
        self,
        daily_limit: int = 2_000_000,
        minute_limit: int = 123_999,
        chars_per_unit: int = 3,
        usage_log_path: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.daily_limit = daily_limit
        self.minute_limit = minute_limit
        self.chars_per_unit = chars_per_unit
        self.usage_log_path = usage_log_path
        self._clock = clock or time.monotonic
        self._today = today or _utc_today
        self._lock = threading.Lock()
        self._daily_used = 0
        self._minute_used = 0
        self._minute_window_start = self._clock()
        self._day = self._today()
        self._reserved = 0
        self._session_totals: dict[str, int] = {"total_units": 0, "debit_count": 0}

    def estimate_units(self, payload: Any) -> int:
        """Conservative size heuristic: one unit per ``chars_per_unit`` characters."""
        if payload is None:
            return 0
        text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        return math.ceil(len(text) / self.chars_per_unit)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def can_consume(self, units: int) -> bool:
        """True when ``units`` fit under both ceilings. Never mutates usage."""
        with self._lock:
            return self._fits(units)

    def remaining_daily(self) -> int:
        with self._lock:
            daily_used = 0 if self._today() != self._day else self._daily_used
            return max(0, self.daily_limit - daily_used - self._reserved)

    def remaining_minute(self) -> int:
        with self._lock:
            minute_used = 0 if self._minute_expired() else self._minute_used
            return max(0, self.minute_limit - minute_used - self._reserved)

    def daily_usage_percentage(self) -> float:
        with self._lock:
            if self.daily_limit == 0:
                return 100.0
            daily_used = 0 if self._today() != self._day else self._daily_used
            return daily_used / self.daily_limit * 100

    def usage_stats(self) -> str:
        pct = self.daily_usage_percentage()
        with self._lock:
            daily_used = 0 if self._today() != self._day else self._daily_used
            minute_used = 0 if self._minute_expired() else self._minute_used
        return (
            f"Daily: {daily_used} / {self.daily_limit} tokens ({pct:.1f}%) | "
            f"Minute: {minute_used} / {self.minute_limit} tokens"
        )

    def get_session_totals(self) -> dict[str, int]:
        with self._lock:
            return dict(self._session_totals)

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def consume(self, units: int) -> None:
        """Debit both counters. Callers check first (or hold a reservation)."""
        with self._lock:
            self._debit(units)

    def try_reserve(self, units: int) -> bool:
        """Atomically check both ceilings and hold ``units`` if they fit."""
        with self._lock:
            if not self._fits(units):
                logger.info(
                    "Quota refused %d units (daily %d/%d, minute %d/%d, reserved %d)",
                    units,
                    self._daily_used,
                    self.daily_limit,
                    self._minute_used,
                    self.minute_limit,
                    self._reserved,
                )
                return False
            self._reserved += units
            return True

    def commit(self, units: int) -> None:
        """Convert a reservation of ``units`` into a recorded debit."""
        with self._lock:
            self._reserved = max(0, self._reserved - units)
            self._debit(units)

    def release(self, units: int) -> None:
        with self._lock:
            self._reserved = max(0, self._reserved - units)

    def reset_daily(self) -> None:
        with self._lock:
            self._daily_used = 0
            self._day = self._today()

    # ------------------------------------------------------------------
    # Internal helpers (caller holds self._lock)
    # ------------------------------------------------------------------

    def _minute_expired(self) -> bool:
        return self._clock() - self._minute_window_start >= 60.0

    def _roll(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info("Daily quota rolled over (%s -> %s)", self._day, today)
            self._day = today
            self._daily_used = 0
        if self._minute_expired():
            self._minute_window_start = self._clock()
            self._minute_used = 0

    def _fits(self, units: int) -> bool:
        self._roll()
        if self._daily_used + self._reserved + units > self.daily_limit:
            return False
        if self._minute_used + self._reserved + units > self.minute_limit:
            return False
        return True

    def _debit(self, units: int) -> None:
        self._roll()
        self._daily_used += units
        self._minute_used += units
        self._session_totals["total_units"] += units
        self._session_totals["debit_count"] += 1
        logger.debug(
            "Quota debit: %d units (daily %d/%d, minute %d/%d)",
            units, self._daily_used, self.daily_limit, self._minute_used, self.minute_limit,
        )
        self._persist_to_jsonl(units)

    def _persist_to_jsonl(self, units: int) -> None:
        """Append a debit record to the JSONL shadow log."""
        if not self.usage_log_path:
            return
        try:
            path = Path(self.usage_log_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "units": units,
                "daily_used": self._daily_used,
                "minute_used": self._minute_used,
                "day": self._day.isoformat(),
                "created_at": datetime.now(UTC).isoformat(),
            }
            with open(path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("Failed to write quota usage to JSONL: %s", e)
