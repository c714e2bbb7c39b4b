"""Per-key mutexes for serializing read-modify-write cycles on one identifier."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLock:
    """
    Registry of re-entrant locks keyed by an arbitrary hashable.

    Locks are created on first use and dropped once no thread holds or waits
    on them, so the registry does not grow with every sequence key ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registry. Services accept their own instance for tests.
default_locks = KeyedLock()
