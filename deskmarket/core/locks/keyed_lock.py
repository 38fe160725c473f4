"""Per-key async mutual exclusion."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from deskmarket.core.locks.exceptions import LockTimeout

logger = logging.getLogger(__name__)


def app_lock_key(app_id: str) -> str:
    """Lock key serialising placement work for one app id."""
    return f"app:{app_id.lower()}"


def source_lock_key(source: str) -> str:
    """Lock key serialising installs of one source (URL or manifest id)."""
    digest = hashlib.sha256(source.encode("utf-8")).hexdigest()[:16]
    return f"source:{digest}"


@dataclass
class _Entry:
    lock: asyncio.Lock
    users: int = 0


class KeyedLock:
    """
    Advisory async mutex keyed by string.

    Waiters for the same key are served in the order asyncio.Lock wakes them
    (FIFO). Entries are dropped once no holder or waiter references them, so
    the map only contains keys that are in use. Locks are not reentrant and
    a holder may keep a key for as long as it likes; only waiting is bounded.
    """

    def __init__(self, default_timeout: Optional[float] = None):
        """
        Args:
            default_timeout: Max seconds acquire() waits (None = forever)
        """
        self.default_timeout = default_timeout
        self._entries: Dict[str, _Entry] = {}

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def active_keys(self) -> list[str]:
        return sorted(key for key, entry in self._entries.items() if entry.lock.locked())

    async def acquire(self, key: str, timeout: Optional[float] = None) -> None:
        """
        Acquire the lock for key.

        A lock granted just as the wait gives up is released again.

        Raises:
            LockTimeout: If the lock was not obtained within the timeout
        """
        if timeout is None:
            timeout = self.default_timeout

        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(lock=asyncio.Lock())
            self._entries[key] = entry
        entry.users += 1

        if entry.lock.locked():
            logger.debug(f"Waiting for lock {key}")

        acquiring = asyncio.create_task(entry.lock.acquire())
        try:
            done, _ = await asyncio.wait({acquiring}, timeout=timeout)
        except BaseException:
            _withdraw(acquiring, entry.lock)
            self._forget(key, entry)
            raise

        if not done:
            _withdraw(acquiring, entry.lock)
            self._forget(key, entry)
            raise LockTimeout(key, timeout)

    def release(self, key: str) -> None:
        """Release the lock for key (must be held)."""
        entry = self._entries.get(key)
        if entry is None or not entry.lock.locked():
            raise RuntimeError(f"Lock {key} is not held")
        entry.lock.release()
        self._forget(key, entry)

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Async context manager around acquire/release."""
        await self.acquire(key, timeout=timeout)
        try:
            yield
        finally:
            self.release(key)

    def _forget(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users <= 0 and self._entries.get(key) is entry:
            del self._entries[key]


def _withdraw(acquiring: asyncio.Task, lock: asyncio.Lock) -> None:
    """Abandon an acquire attempt; a lock it already won is released."""
    if not acquiring.done():
        acquiring.cancel()
        acquiring.add_done_callback(lambda task: _release_if_won(task, lock))
    else:
        _release_if_won(acquiring, lock)


def _release_if_won(acquiring: asyncio.Task, lock: asyncio.Lock) -> None:
    if not acquiring.cancelled() and acquiring.exception() is None:
        lock.release()
