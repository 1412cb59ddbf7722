"""In-process exclusive sections keyed by resource name.

Used around the relayer nonce and per-phone registration. Cross-process
exclusivity comes from the database (row locks / BEGIN IMMEDIATE); these
locks keep coroutines of one process from queueing on the database.
"""

import asyncio
import logging
from typing import Optional

from phonevault.errors import TransientError

logger = logging.getLogger(__name__)

# Global lock registry: key -> asyncio.Lock
_locks: dict[str, asyncio.Lock] = {}


def get_lock(key: str) -> asyncio.Lock:
    """Get or create the lock for a key."""
    return _locks.setdefault(key, asyncio.Lock())


class LockTimeoutError(TransientError):
    """Raised when a lock cannot be acquired within the timeout period."""

    code = "lock_timeout"


class KeyedLock:
    """Context manager for exclusive access to a named resource.

    Example:
        async with KeyedLock(f"relay-nonce:{address}", operation="submit"):
            nonce = await repo.lock_relay_nonce(address)
            ...
    """

    def __init__(
        self,
        key: str,
        timeout: Optional[float] = 30.0,
        operation: str = "exclusive_operation",
    ):
        """Initialize the lock.

        Args:
            key: Resource name
            timeout: Maximum time to wait for lock (None = wait forever)
            operation: Description of the operation for logging
        """
        self.key = key
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "KeyedLock":
        """Acquire the lock."""
        self._lock = get_lock(self.key)

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
            logger.debug(f"Lock acquired for {self.key}: {self.operation}")
            return self

        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {self.key} after {self.timeout}s: {self.operation}")
            raise LockTimeoutError(
                f"Could not acquire lock for {self.key} within {self.timeout}s"
            )

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release the lock."""
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for {self.key}: {self.operation}")
        return False


def clear_locks() -> None:
    """Clear all locks (useful for testing)."""
    _locks.clear()
