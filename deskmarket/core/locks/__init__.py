"""Locking mechanisms for install coordination."""

from deskmarket.core.locks.exceptions import LockTimeout
from deskmarket.core.locks.keyed_lock import KeyedLock, app_lock_key, source_lock_key

__all__ = [
    "KeyedLock",
    "LockTimeout",
    "app_lock_key",
    "source_lock_key",
]
