"""
Entry model and the durable storage tier.

Provides CacheEntry / EntryMetadata, the StorageBackend protocol with its
backends (InMemoryBackend, FileBackend, RedisBackend, NullBackend), the
PersistentStore that namespaces and encodes entries on top of a backend, and
the persistence policies that decide which keys are stored durably.
"""

from __future__ import annotations

import errno
import json
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol
from urllib.parse import quote, unquote

from .exceptions import ReadCorruptionError, SerializationError, StorageQuotaError

try:
    import redis
except ImportError:
    redis = None  # type: ignore


DEFAULT_NAMESPACE = "dashboard_cache"

PersistencePolicy = Callable[[str], bool]

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


# ============================================================================
# Cache Entry - value object stored per key
# ============================================================================


@dataclass
class CacheEntry:
    """Cached value with its timing and access statistics."""

    data: Any
    created_at: float  # Unix timestamp
    expires_at: float
    last_accessed_at: float
    access_count: int = 0

    @classmethod
    def create(cls, data: Any, ttl: float, now: float | None = None) -> CacheEntry:
        """Build a fresh entry expiring ttl seconds from now."""
        if now is None:
            now = time.time()
        return cls(
            data=data,
            created_at=now,
            expires_at=now + max(ttl, 0),
            last_accessed_at=now,
        )

    def is_expired(self, now: float | None = None) -> bool:
        if now is None:
            now = time.time()
        return now > self.expires_at

    def age(self, now: float | None = None) -> float:
        """Get age of entry in seconds."""
        if now is None:
            now = time.time()
        return now - self.created_at

    def touch(self, now: float) -> None:
        """Record a read."""
        self.access_count += 1
        self.last_accessed_at = now

    def to_record(self) -> dict[str, Any]:
        """Persisted layout of the entry."""
        return {
            "data": self.data,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "lastAccessedAt": self.last_accessed_at,
            "accessCount": self.access_count,
        }

    @classmethod
    def from_record(cls, key: str, record: Any) -> CacheEntry:
        """Rebuild an entry from its persisted layout, validating every field."""
        if not isinstance(record, dict):
            raise ReadCorruptionError(key, "record is not an object")
        try:
            created_at = float(record["createdAt"])
            expires_at = float(record["expiresAt"])
            last_accessed_at = float(record.get("lastAccessedAt", created_at))
            access_count = int(record.get("accessCount", 0))
            data = record["data"]
        except KeyError as e:
            raise ReadCorruptionError(key, f"missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise ReadCorruptionError(key, str(e)) from e
        if expires_at < created_at:
            raise ReadCorruptionError(key, "expiresAt precedes createdAt")
        return cls(
            data=data,
            created_at=created_at,
            expires_at=expires_at,
            last_accessed_at=last_accessed_at,
            access_count=access_count,
        )


@dataclass
class EntryMetadata:
    """Statistics kept alongside each entry; never consulted for expiry."""

    size: int  # serialized length of the data
    ttl: float
    created: float


def serialize(value: Any) -> str:
    """Encode a value as JSON text or raise SerializationError."""
    try:
        return json.dumps(
            value, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Value is not JSON serializable: {e}") from e


def serialized_size(value: Any) -> int:
    """Byte length of the value's serialized form."""
    return len(serialize(value).encode("utf-8"))


# ============================================================================
# Storage Backend Protocol - text key/value substrate
# ============================================================================


class StorageBackend(Protocol):
    """
    Protocol for durable text key/value stores.

    Modelled on the browser's localStorage: string keys to string values.
    Backends raise StorageQuotaError when they are full.

    Example:
        class MyBackend:
            def get_item(self, key: str) -> str | None: ...
            def set_item(self, key: str, value: str) -> None: ...
            def remove_item(self, key: str) -> None: ...
            def keys(self) -> Iterable[str]: ...
    """

    def get_item(self, key: str) -> str | None:
        """Get stored text or None."""
        ...

    def set_item(self, key: str, value: str) -> None:
        """Store text under key, replacing any previous value."""
        ...

    def remove_item(self, key: str) -> None:
        """Remove key; missing keys are ignored."""
        ...

    def keys(self) -> Iterable[str]:
        """Iterate over every stored key."""
        ...


def validate_storage_backend(backend: Any) -> bool:
    """
    Validate that an object implements the StorageBackend protocol.
    Useful for debugging custom backends.

    Returns:
        True if valid, False otherwise
    """
    required_methods = ["get_item", "set_item", "remove_item", "keys"]
    return all(
        hasattr(backend, method) and callable(getattr(backend, method))
        for method in required_methods
    )


class InMemoryBackend:
    """
    Dict-backed backend.

    Attributes:
        max_bytes: optional quota; writes that would exceed it raise
            StorageQuotaError (sizes counted as key + value characters,
            as browsers do for localStorage)
    """

    def __init__(self, max_bytes: int | None = None):
        self._items: dict[str, str] = {}
        self._used = 0
        self.max_bytes = max_bytes

    def used_bytes(self) -> int:
        return self._used

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        current = self._items.get(key)
        used = self._used
        if current is not None:
            used -= len(key) + len(current)
        used += len(key) + len(value)
        if self.max_bytes is not None and used > self.max_bytes:
            raise StorageQuotaError(
                f"Writing {key!r} exceeds quota of {self.max_bytes} bytes"
            )
        self._items[key] = value
        self._used = used

    def remove_item(self, key: str) -> None:
        value = self._items.pop(key, None)
        if value is not None:
            self._used -= len(key) + len(value)

    def keys(self) -> Iterable[str]:
        return list(self._items)


class NullBackend:
    """Backend that stores nothing; turns the cache into memory-only."""

    def get_item(self, key: str) -> str | None:
        return None

    def set_item(self, key: str, value: str) -> None:
        return None

    def remove_item(self, key: str) -> None:
        return None

    def keys(self) -> Iterable[str]:
        return ()


class FileBackend:
    """
    Directory-backed backend: one file per key.

    Keys are percent-encoded into file names, writes go through a temporary
    file and os.replace so a crash never leaves a half-written record.

    Example:
        store = PersistentStore(FileBackend("~/.cache/dashboard"))
    """

    SUFFIX = ".json"

    def __init__(self, directory: str | os.PathLike[str]):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}{self.SUFFIX}"

    def get_item(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if e.errno in _QUOTA_ERRNOS:
                raise StorageQuotaError(f"No space left writing {key!r}") from e
            raise

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> Iterable[str]:
        return [
            unquote(path.name[: -len(self.SUFFIX)])
            for path in self.directory.iterdir()
            if path.name.endswith(self.SUFFIX)
        ]


class RedisBackend:
    """
    Redis-backed backend.

    Example:
        import redis
        client = redis.Redis(host='localhost', port=6379)
        store = PersistentStore(RedisBackend(client, prefix="app:"))
    """

    def __init__(self, redis_client: Any, prefix: str = ""):
        """
        Initialize Redis backend.

        Args:
            redis_client: Redis client instance
            prefix: Key prefix for namespacing
        """
        if redis is None:
            raise ImportError("redis package required. Install: pip install redis")
        self.client = redis_client
        self.prefix = prefix

    def _make_key(self, key: str) -> str:
        """Add prefix to key."""
        return f"{self.prefix}{key}"

    def get_item(self, key: str) -> str | None:
        data = self.client.get(self._make_key(key))
        if data is None:
            return None
        return data.decode("utf-8") if isinstance(data, bytes) else data

    def set_item(self, key: str, value: str) -> None:
        try:
            self.client.set(self._make_key(key), value)
        except redis.exceptions.ResponseError as e:
            # maxmemory reached with a noeviction policy
            if str(e).startswith("OOM"):
                raise StorageQuotaError(f"Redis out of memory writing {key!r}") from e
            raise

    def remove_item(self, key: str) -> None:
        self.client.delete(self._make_key(key))

    def keys(self) -> Iterable[str]:
        pattern = f"{self.prefix}*"
        for raw in self.client.scan_iter(match=pattern):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            yield name[len(self.prefix) :]


# ============================================================================
# PersistentStore - namespaced entry records on top of a backend
# ============================================================================


class PersistentStore:
    """
    Stores CacheEntry records as JSON text under "<namespace>_<key>".

    Raises SerializationError, StorageQuotaError and ReadCorruptionError;
    callers decide how to degrade.
    """

    def __init__(
        self,
        backend: StorageBackend | None = None,
        namespace: str = DEFAULT_NAMESPACE,
    ):
        self.backend = backend if backend is not None else InMemoryBackend()
        self.namespace = namespace
        self._prefix = f"{namespace}_"

    def storage_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def write(self, key: str, entry: CacheEntry) -> None:
        self.backend.set_item(self.storage_key(key), serialize(entry.to_record()))

    def read(self, key: str) -> CacheEntry | None:
        raw = self.backend.get_item(self.storage_key(key))
        if raw is None:
            return None
        return self._decode(key, raw)

    def remove(self, key: str) -> bool:
        """Remove the record for key. Returns whether one was stored."""
        storage_key = self.storage_key(key)
        existed = self.backend.get_item(storage_key) is not None
        self.backend.remove_item(storage_key)
        return existed

    def scan_all(self) -> Iterator[tuple[str, CacheEntry | None]]:
        """
        Yield (key, entry) for every record in this namespace.

        Corrupt records yield (key, None) so the caller can remove them.
        """
        for storage_key in list(self.backend.keys()):
            if not storage_key.startswith(self._prefix):
                continue
            key = storage_key[len(self._prefix) :]
            raw = self.backend.get_item(storage_key)
            if raw is None:
                continue
            try:
                yield key, self._decode(key, raw)
            except ReadCorruptionError:
                yield key, None

    def clear(self) -> int:
        """Remove every record in this namespace. Returns count removed."""
        removed = 0
        for storage_key in list(self.backend.keys()):
            if storage_key.startswith(self._prefix):
                self.backend.remove_item(storage_key)
                removed += 1
        return removed

    def _decode(self, key: str, raw: str) -> CacheEntry:
        try:
            record = json.loads(raw)
        except ValueError as e:
            raise ReadCorruptionError(key, f"invalid JSON: {e}") from e
        return CacheEntry.from_record(key, record)


# ============================================================================
# Persistence policies
# ============================================================================


class KeywordPolicy:
    """Persist keys containing any of the given keywords."""

    DEFAULT_KEYWORDS = ("dashboard", "geospatial", "demographics")

    def __init__(self, *keywords: str):
        self.keywords = keywords or self.DEFAULT_KEYWORDS

    def __call__(self, key: str) -> bool:
        return any(word in key for word in self.keywords)

    def __repr__(self) -> str:
        return f"KeywordPolicy{self.keywords!r}"


class PatternPolicy:
    """Persist keys matching a regular expression (searched, not anchored)."""

    def __init__(self, pattern: str | re.Pattern[str]):
        self.pattern = re.compile(pattern)

    def __call__(self, key: str) -> bool:
        return self.pattern.search(key) is not None

    def __repr__(self) -> str:
        return f"PatternPolicy({self.pattern.pattern!r})"


def persist_all(key: str) -> bool:
    return True


def persist_none(key: str) -> bool:
    return False
