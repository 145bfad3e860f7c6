"""Per-key locks serializing read-modify-write sequences within a process."""

import contextlib
import threading
from typing import Dict, Iterator


class KeyedLock:
    """One reentrant lock per key, created on demand and dropped when idle.

    Cross-process safety comes from compare-and-set on the store; this lock
    keeps threads of one process from racing each other into CAS retries.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._waiters: Dict[str, int] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
