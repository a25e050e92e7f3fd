"""
Exception hierarchy for the cache and its persistence tier.

None of these escape DataCache's own read/write paths; they are raised by the
persistence layer and caught (and logged) by the cache.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base class for all cache errors."""


class PersistenceError(CacheError):
    """Base class for failures in the durable storage tier."""


class SerializationError(PersistenceError):
    """Value cannot be represented in the persisted record format."""


class StorageQuotaError(PersistenceError):
    """Durable storage is full."""


class ReadCorruptionError(PersistenceError):
    """A stored record could not be parsed back into an entry."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Corrupt record for {key!r}: {reason}")
        self.key = key
        self.reason = reason


class LoaderError(CacheError):
    """A preload or refresh loader failed for a key."""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"Loader for {key!r} failed: {cause}")
        self.key = key
        self.cause = cause
