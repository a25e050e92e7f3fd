"""
Client-side data cache for dashboard API responses.

TTL cache with a durable persistence tier, a cleanup sweeper, and
preload / smart-refresh orchestration over async data loaders.
"""

from .storage import (
    CacheEntry,
    EntryMetadata,
    StorageBackend,
    InMemoryBackend,
    FileBackend,
    RedisBackend,
    NullBackend,
    PersistentStore,
    KeywordPolicy,
    PatternPolicy,
    persist_all,
    persist_none,
    validate_storage_backend,
)
from .cache import DataCache, CacheLookup, CacheStats, DEFAULT_TTL
from .loaders import PreloadResult, RefreshResult, cached_loader
from .scheduler import CleanupScheduler
from .exceptions import (
    CacheError,
    PersistenceError,
    SerializationError,
    StorageQuotaError,
    ReadCorruptionError,
    LoaderError,
)

__all__ = [
    "CacheEntry",
    "EntryMetadata",
    "StorageBackend",
    "InMemoryBackend",
    "FileBackend",
    "RedisBackend",
    "NullBackend",
    "PersistentStore",
    "KeywordPolicy",
    "PatternPolicy",
    "persist_all",
    "persist_none",
    "validate_storage_backend",
    "DataCache",
    "CacheLookup",
    "CacheStats",
    "DEFAULT_TTL",
    "PreloadResult",
    "RefreshResult",
    "cached_loader",
    "CleanupScheduler",
    "CacheError",
    "PersistenceError",
    "SerializationError",
    "StorageQuotaError",
    "ReadCorruptionError",
    "LoaderError",
]
