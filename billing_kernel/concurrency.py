"""
Keyed in-process mutual exclusion (``billing_kernel.concurrency``).

Responsibility
--------------
Serialize operations that share a key -- all payment allocations and status
overrides for one customer of one account, or every state change of one
contract -- while letting operations on different keys run fully in
parallel.

On PostgreSQL the services additionally take ``SELECT ... FOR UPDATE`` row
locks, which extends the guarantee across processes.  SQLite has no row
locks, so within a single process this registry is what prevents two
payments from reading the same stale pending amount.

Locks are reference counted: an entry exists only while some thread holds
or waits for it, so the registry does not grow with the number of
customers ever seen.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from billing_kernel.exceptions import ConcurrencyConflictError
from billing_kernel.logging_config import get_logger

logger = get_logger("concurrency")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLockRegistry:
    """Registry of per-key locks with bounded waiting."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConcurrencyConflictError: if the lock is not acquired within
                ``timeout`` seconds.  Nothing has been done at that point.
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1

        acquired = False
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                logger.warning(
                    "keyed_lock_timeout",
                    extra={"key": repr(key), "timeout_seconds": timeout},
                )
                raise ConcurrencyConflictError(
                    "lock", repr(key), f"not acquired within {timeout}s"
                )
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Process-wide registry shared by every service instance.
default_lock_registry = KeyedLockRegistry()
