"""
Process-local locks that serialize mutations of a single card.

The ledger (card submission) and the score aggregator (recompute after
grading) both take the lock for the card's (user, league, week, year) key.
Across processes the row lock taken with ``SELECT ... FOR UPDATE`` does the
same job; this registry covers threads inside one process (request handlers
and the background scheduler), where SQLite offers no row locks.
"""

import threading
from contextlib import contextmanager

from flask import current_app, has_app_context

from cardleague.errors import CardLockTimeout

DEFAULT_LOCK_TIMEOUT = 10.0


def lock_timeout():
    """Seconds to wait for a card lock (CARD_LOCK_TIMEOUT_SECONDS)"""
    if has_app_context():
        return float(current_app.config.get("CARD_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT))
    return DEFAULT_LOCK_TIMEOUT


class CardLockRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting]
        self._locks = {}

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key, timeout_s=None):
        """Hold the lock for ``key``.

        Raises:
            CardLockTimeout: the lock was not acquired within ``timeout_s``
        """
        lock = self._checkout(key)
        try:
            if timeout_s is None:
                acquired = lock.acquire()
            else:
                acquired = lock.acquire(timeout=max(0.0, float(timeout_s)))

            if not acquired:
                raise CardLockTimeout(key, timeout_s)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def __len__(self):
        with self._guard:
            return len(self._locks)

    def clear(self):
        with self._guard:
            self._locks.clear()


card_locks = CardLockRegistry()
