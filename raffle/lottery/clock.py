"""Time sources and the upkeep interval gate."""

from __future__ import annotations

import threading
import time


def interval_elapsed(now: int, last_timestamp: int, interval: int) -> bool:
    return now - last_timestamp >= interval


class SystemClock:
    """Wall clock in whole seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Clock that only moves when told to, for simulations and tests.

    `increase_time` plays the role of hardhat's `evm_increaseTime`.
    """

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = int(start)
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def increase_time(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards")
        with self._lock:
            self._now += int(seconds)
            return self._now
