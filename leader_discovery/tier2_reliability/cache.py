"""
leader_discovery.tier2_reliability.cache
─────────────────────────────────────────
The cached leader address shared by the watcher thread (single writer) and
any number of querying threads (readers).

The lock is private: callers only see read() / write() / touch(). A write
replaces host and port together, so no reader can observe the host of one
advertisement paired with the port of another.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from leader_discovery.tier1_runtime.clock import Clock, get_clock


@dataclass(frozen=True)
class LeaderAddress:
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ReadWriteLock:
    """
    Shared/exclusive lock. Readers never block each other; a writer excludes
    all readers. Waiting writers are served before newly arriving readers so
    a steady stream of queries cannot starve the watcher.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class LeaderCache:
    """
    Most recently observed leader address, or nothing.

    Usage::

        cache = LeaderCache()
        cache.write(LeaderAddress("10.0.0.1", 8081))
        cache.read()   # → LeaderAddress(host="10.0.0.1", port=8081)
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._lock = ReadWriteLock()
        self._clock = clock or get_clock()
        self._address: LeaderAddress | None = None
        self._confirmed_at: float | None = None

    def read(self) -> LeaderAddress | None:
        with self._lock.read_locked():
            return self._address

    def snapshot(self) -> tuple[LeaderAddress | None, float | None]:
        """Return (address, seconds since last confirmation) under one read lock."""
        with self._lock.read_locked():
            if self._confirmed_at is None:
                return self._address, None
            return self._address, self._clock.elapsed_since(self._confirmed_at)

    def write(self, address: LeaderAddress) -> LeaderAddress | None:
        """Publish *address*; returns the address it replaced."""
        with self._lock.write_locked():
            previous = self._address
            self._address = address
            self._confirmed_at = self._clock.monotonic()
            return previous

    def touch(self) -> None:
        """Mark the current address as still valid. No-op while unset."""
        with self._lock.write_locked():
            if self._address is not None:
                self._confirmed_at = self._clock.monotonic()

    def age(self) -> float | None:
        return self.snapshot()[1]


__all__ = ["LeaderAddress", "LeaderCache", "ReadWriteLock"]
