"""Per-key lock sharding.

Tenant usage counters, job counters and budget approval counters are each
guarded by a lock scoped to their own tenant / job / budget, so unrelated
entities never contend on a shared lock.
"""

from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.get(key):
            yield

    @contextmanager
    def hold_all(self, keys: Iterable[str]) -> Iterator[None]:
        """Acquire several keys in sorted order (deadlock-free for concurrent multi-key holders)."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.get(key))
            yield

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)
