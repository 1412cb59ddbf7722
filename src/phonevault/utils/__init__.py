"""Utility modules for PhoneVault."""

from phonevault.utils.locks import KeyedLock, LockTimeoutError, get_lock
from phonevault.utils.retry import retry_transient

__all__ = ["KeyedLock", "LockTimeoutError", "get_lock", "retry_transient"]
