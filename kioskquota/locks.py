"""Named locks that are shared by everyone asking for the same key."""

from __future__ import annotations

import threading


class LockFactory:
    """Hands out one mutex per key, creating it the first time it is asked for."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get_lock(self, key: str) -> threading.Lock:
        """Return the lock for ``key``; the same key always yields the same lock."""
        lock = self._locks.get(key)
        if lock is not None:
            return lock

        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock