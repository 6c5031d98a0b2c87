# app/billing/locks.py
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from app.billing.errors import LockContention
from services.metrics import increment_lock_contention

logger = logging.getLogger("billing.locks")

T = TypeVar("T")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLockArena:
    """
    One mutex per key (transaction id). Entries are dropped once nobody
    holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return
            entry.refs -= 1
            if entry.refs <= 0:
                self._entries.pop(key, None)

    def acquire(self, key: str, *, timeout: float) -> None:
        entry = self._checkout(key)
        if not entry.lock.acquire(timeout=max(0.0, timeout)):
            self._checkin(key)
            raise LockContention(f"Transaction {key} is locked by another caller")

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._entries.get(key)
        if entry is None:
            return
        entry.lock.release()
        self._checkin(key)

    @contextmanager
    def hold(self, key: str, *, timeout: float) -> Iterator[None]:
        self.acquire(key, timeout=timeout)
        try:
            yield
        finally:
            self.release(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def retry_on_contention(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff_ms: int,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run fn, retrying LockContention with exponential backoff:
    backoff, 2*backoff, 4*backoff... After `attempts` tries the error surfaces.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except LockContention:
            if attempt >= attempts:
                increment_lock_contention("surfaced")
                logger.warning("lock_contention_exhausted attempts=%s", attempts)
                raise
            increment_lock_contention("retried")
            delay_ms = backoff_ms * (2 ** (attempt - 1))
            logger.info("lock_contention_retry attempt=%s delay_ms=%s", attempt, delay_ms)
            sleep(delay_ms / 1000.0)
    raise LockContention("unreachable")
