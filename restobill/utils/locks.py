"""Per-key mutual exclusion for in-process serialization."""
import threading
from contextlib import contextmanager
from typing import Hashable, Optional


class LockTimeout(Exception):
    """The lock for a key could not be acquired in time."""


class KeyedLock:
    """
    One lock per key, created on demand and dropped when nobody holds or waits for it.

    Only serializes callers inside this process; cross-process exclusion is the
    database's job (row locks and version checks).
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        acquired = False
        try:
            acquired = entry[0].acquire(timeout=-1 if timeout is None else max(timeout, 0))
            if not acquired:
                raise LockTimeout(f'Timed out waiting for lock on {key!r}')
            yield
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


# Process-wide registry used by the order lifecycle.
order_locks = KeyedLock()
