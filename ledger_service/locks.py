"""
Entity Lock Manager

Per-entity mutual exclusion for balance mutations. Every operation that
reads a balance, computes a new one and writes it back holds the lock of
each entity it touches for the whole atomic unit. Locks are always taken in
sorted key order so two operations over the same pair of accounts cannot
deadlock.

A key's lock only lives while some thread holds or waits for it, so keys
that are never touched again (including ids that do not exist) do not
accumulate.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List


class AccountLockManager:
    """Hands out one re-entrant lock per entity key"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        """Get (creating on first use) the lock for a key and count the caller"""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]

    @staticmethod
    def ordered(keys: Iterable[str]) -> List[str]:
        """Distinct keys in global acquisition order"""
        return sorted(set(key for key in keys if key))

    @contextmanager
    def hold(self, *keys: str) -> Iterator[List[str]]:
        """
        Hold the locks of all given keys, acquired in ascending order and
        released in reverse.
        """
        ordered = self.ordered(keys)
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
