"""Exclusive sections keyed by resource.

One ``threading.Lock`` per section key, created on demand. Bookings touching
several resources acquire their sections in sorted key order so two callers
can never wait on each other in a cycle. The whole acquisition shares a single
deadline; running out of time raises :class:`LockTimeoutError`.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Hashable, Iterable, Iterator, List, Optional, Tuple

from .errors import LockTimeoutError

__all__ = ["SectionKey", "ResourceLockArena"]

logger = logging.getLogger(__name__)

SectionKey = Tuple[str, str, str]


class ResourceLockArena:
    """Arena of per-resource locks."""

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._timeout_seconds = timeout_seconds
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: SectionKey) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(
        self, keys: Iterable[SectionKey], *, timeout_seconds: Optional[float] = None
    ) -> Iterator[List[SectionKey]]:
        """Hold every section in ``keys`` for the duration of the ``with`` block."""

        ordered = sorted(set(keys))
        timeout = self._timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = time.monotonic() + timeout
        acquired: List[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    logger.warning("Timed out after %.2fs waiting for section %s", timeout, key)
                    raise LockTimeoutError(f"Resource section {'/'.join(key)} is busy")
                acquired.append(lock)
            logger.debug("Holding sections %s", ordered)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_held(self, key: SectionKey) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())
