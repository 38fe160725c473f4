"""Lock-related exceptions."""

from __future__ import annotations

from typing import Optional


class LockTimeout(RuntimeError):
    """Raised when a keyed lock cannot be acquired in time."""

    def __init__(
        self,
        key: str,
        timeout: float,
        message: Optional[str] = None,
    ):
        """
        Initialize lock timeout exception.

        Args:
            key: Lock key that could not be acquired
            timeout: Seconds waited before giving up
            message: Optional custom message
        """
        self.key = key
        self.timeout = timeout

        if message is None:
            message = f"Timed out after {timeout:.1f}s waiting for lock on {key}"

        super().__init__(message)
