from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Hashable, Iterator, List, Optional, Tuple

from circulation.errors import LockTimeout
from config import settings

logger = logging.getLogger(__name__)

LockKey = Tuple[str, Hashable]


class EntityLocks:
    """Per-entity mutual exclusion for circulation mutations.

    Keys look like ``("patron", 3)`` or ``("copy", 17)``. ``hold`` acquires a
    set of keys in sorted order, so two operations that touch the same
    entities can never deadlock, and gives up after ``timeout`` seconds.
    A key's lock is dropped once no caller holds or waits on it.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = settings.lock_timeout if timeout is None else timeout
        # key -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[LockKey, List[Any]] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: LockKey) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: LockKey) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: LockKey) -> Iterator[None]:
        ordered = sorted(set(keys), key=lambda k: (k[0], str(k[1])))
        deadline = time.monotonic() + self.timeout
        acquired: List[Tuple[LockKey, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    logger.warning(f"Timed out waiting for lock {key[0]}:{key[1]}")
                    raise LockTimeout(f"{key[0]} {key[1]} is busy, try again.")
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)
