"""
Per-account lock registry.

Balance read-modify-write cycles are serialized per account number rather
than behind one global lock, so transfers on unrelated accounts proceed in
parallel.
"""

from contextlib import contextmanager, ExitStack
from typing import Dict, Iterator
import threading


class AccountLockRegistry:
    """Hands out one lock per account key, created lazily"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """
        Hold the locks of all given keys.

        Locks are always taken in sorted key order, so two callers holding
        overlapping key sets can never deadlock each other.
        """
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock_for(key))
            yield

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
