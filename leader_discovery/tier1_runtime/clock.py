"""
leader_discovery.tier1_runtime.clock
─────────────────────────────────────
Mockable monotonic time source. The leader cache measures staleness with
it, so tests can age a cached leader without sleeping.
"""
from __future__ import annotations

import threading
import time
from typing import Callable


# ── Clock implementation ───────────────────────────────────────────────────

class Clock:
    """Mockable monotonic clock. Pass monotonic_fn to control time in tests."""

    def __init__(self, monotonic_fn: Callable[[], float] | None = None) -> None:
        self._monotonic_fn = monotonic_fn or time.monotonic

    def monotonic(self) -> float:
        """Return seconds from an arbitrary fixed origin. Never goes backwards."""
        return self._monotonic_fn()

    def elapsed_since(self, start: float) -> float:
        return self.monotonic() - start


class ManualClock(Clock):
    """
    Clock that only moves when told to. Safe to advance from one thread
    while others read it.

    Usage::

        clock = ManualClock()
        cache = LeaderCache(clock=clock)
        clock.advance(31.0)
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()
        super().__init__(monotonic_fn=self._read)

    def _read(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


# ── Module-level singleton ─────────────────────────────────────────────────

_clock = Clock()


def get_clock() -> Clock:
    """Return the global clock instance."""
    return _clock


def set_clock(clock: Clock) -> None:
    """Replace the global clock (use in tests)."""
    global _clock
    _clock = clock


__all__ = ["Clock", "ManualClock", "get_clock", "set_clock"]
