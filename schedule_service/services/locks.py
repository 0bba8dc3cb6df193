"""Per-key locks that serialize check-then-write for one teacher's day."""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Hands out one lock per key; ``hold`` acquires several in sorted order.

    A key's lock lives only while some caller is inside ``hold`` for it, so
    the map does not grow with every (teacher, date) ever booked.
    """

    def __init__(self) -> None:
        # key -> [lock, number of callers holding or waiting on it]
        self._locks: dict[Hashable, list] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        # Sorted acquisition keeps two writers moving lessons between the same
        # pair of days from deadlocking.
        ordered = sorted(set(keys), key=repr)
        checked_out: list[Hashable] = []
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)
