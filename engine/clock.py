"""Millisecond clocks used for deadlines and message ordering."""

from __future__ import annotations

import threading
from time import time
from typing import Protocol


class Clock(Protocol):
    """Source of wall-clock time in epoch milliseconds."""

    def now_ms(self) -> int:
        """Return the current time in milliseconds."""


class SystemClock:
    """Clock backed by the host wall clock."""

    def now_ms(self) -> int:
        return int(time() * 1000)


class ManualClock:
    """Clock that only moves when told to; used to drive deadlines in tests."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now_ms = int(start_ms)
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            return self._now_ms

    def advance(self, delta_ms: int) -> int:
        """Move time forward and return the new reading."""
        if delta_ms < 0:
            raise ValueError("ManualClock cannot move backwards.")
        with self._lock:
            self._now_ms += int(delta_ms)
            return self._now_ms

    def set(self, now_ms: int) -> None:
        with self._lock:
            self._now_ms = int(now_ms)
