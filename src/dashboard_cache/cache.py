"""
DataCache: the TTL cache sitting between dashboard views and the REST API.

Entries live in memory; keys selected by the persistence policy are also
written to a PersistentStore so they survive restarts. Persistence problems
are logged and never fail a cache call.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping

from .exceptions import ReadCorruptionError, SerializationError, StorageQuotaError
from .loaders import Loader, PreloadResult, RefreshResult, preload_data, smart_refresh
from .storage import (
    CacheEntry,
    EntryMetadata,
    KeywordPolicy,
    PersistencePolicy,
    PersistentStore,
    serialized_size,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60  # seconds
DEFAULT_STALENESS_THRESHOLD = 2 * 60
DEFAULT_QUOTA_BACKOFF = 60


@dataclass(frozen=True)
class CacheLookup:
    """Result of a successful get()."""

    data: Any
    is_expired: bool
    age: float
    access_count: int


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    active_entries: int
    expired_entries: int
    total_size: int
    average_size: float

    @property
    def active_ratio(self) -> float:
        """Share of tracked entries that are still live."""
        return self.active_entries / (self.total_entries or 1)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class DataCache:
    """
    TTL cache with a durable tier, lazy + eager expiry and loader orchestration.

    Construct one per application and pass it where it is needed; the cleanup
    sweeper is a separate CleanupScheduler owned by the same composition root.

    Example:
        cache = DataCache(PersistentStore(FileBackend("/tmp/dash")))
        cache.set("dashboard-data", payload, ttl=300)
        hit = cache.get("dashboard-data")
        if hit is not None:
            render(hit.data)

    Attributes:
        store: durable tier consulted on startup and on memory misses
        policy: predicate selecting keys that are persisted
        default_ttl: TTL in seconds used when set() gets none
        quota_backoff: seconds to stay memory-only after a quota error
    """

    def __init__(
        self,
        store: PersistentStore | None = None,
        policy: PersistencePolicy | None = None,
        default_ttl: float = DEFAULT_TTL,
        quota_backoff: float = DEFAULT_QUOTA_BACKOFF,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else PersistentStore()
        self.policy = policy if policy is not None else KeywordPolicy()
        self.default_ttl = default_ttl
        self.quota_backoff = quota_backoff
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._metadata: dict[str, EntryMetadata] = {}
        self._lock = threading.RLock()
        self._persist_suspended_until = 0.0

        self.load_persisted()

    # ------------------------------------------------------------------
    # Key generation
    # ------------------------------------------------------------------

    @staticmethod
    def generate_key(kind: str, params: Mapping[str, Any] | None = None) -> str:
        """
        Build a cache key for a structured request.

        Equal params give equal keys regardless of insertion order:
            generate_key("od_matrix", {"to": 2, "from": 1})
            -> 'od_matrix_{"from":1,"to":2}'
        """
        param_str = (
            json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
            if params
            else ""
        )
        return f"{kind}_{param_str}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def set(self, key: str, data: Any, ttl: float | None = None) -> bool:
        """Store data for ttl seconds. Always succeeds for the in-memory write."""
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            now = self._clock()
            entry = CacheEntry.create(data, ttl, now)
            try:
                size = serialized_size(data)
            except SerializationError:
                size = 0
            self._entries[key] = entry
            self._metadata[key] = EntryMetadata(
                size=size, ttl=max(ttl, 0), created=now
            )
            self._persist(key, entry)
        return True

    def get(
        self, key: str, allow_expired: bool = False, update_access: bool = True
    ) -> CacheLookup | None:
        """
        Look up key in memory, then in the persistent store.

        Expired entries are deleted and reported as misses unless
        allow_expired is set.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._read_persisted(key)
                if entry is not None:
                    self._entries[key] = entry
                    self._metadata[key] = self._rebuild_metadata(entry)

            if entry is None:
                logger.debug(f"Cache MISS: {key}")
                return None

            now = self._clock()
            expired = entry.is_expired(now)
            if expired and not allow_expired:
                logger.debug(f"Cache EXPIRED: {key}")
                self.delete(key)
                return None

            if update_access:
                entry.touch(now)

            return CacheLookup(
                data=entry.data,
                is_expired=expired,
                age=entry.age(now),
                access_count=entry.access_count,
            )

    def has(self, key: str) -> bool:
        """Check if key exists and is not expired, without touching access stats."""
        lookup = self.get(key, update_access=False)
        return lookup is not None and not lookup.is_expired

    def delete(self, key: str) -> bool:
        """Remove key everywhere. Returns whether it was tracked in memory."""
        with self._lock:
            existed = self._entries.pop(key, None) is not None
            self._metadata.pop(key, None)
            if self._remove_persisted(key):
                # freed space may let persistence resume
                self._persist_suspended_until = 0.0
        return existed

    def clear(self) -> None:
        """Clear all cached data, including persisted records."""
        with self._lock:
            self._entries.clear()
            self._metadata.clear()
            self._persist_suspended_until = 0.0
            try:
                self.store.clear()
            except Exception as e:
                logger.warning(f"Failed to clear persistent storage: {e}")

    def keys(self) -> list[str]:
        """Snapshot of tracked keys; may include expired, unswept keys."""
        with self._lock:
            return list(self._entries)

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Delete every key the regular expression matches (searched, unanchored)."""
        regex = re.compile(pattern)
        with self._lock:
            keys_to_delete = [key for key in self._entries if regex.search(key)]
            for key in keys_to_delete:
                self.delete(key)
        logger.debug(f"Invalidated {len(keys_to_delete)} keys matching {regex.pattern!r}")
        return len(keys_to_delete)

    def update_ttl(self, key: str, new_ttl: float) -> bool:
        """Restart the expiry clock of an existing entry with a new TTL."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + max(new_ttl, 0)
            metadata = self._metadata.get(key)
            if metadata is not None:
                metadata.ttl = max(new_ttl, 0)
            self._persist(key, entry)
        return True

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count of removed entries."""
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._entries.items() if entry.expires_at < now
            ]
            for key in expired_keys:
                self.delete(key)
        if expired_keys:
            logger.info(f"Cleaned up {len(expired_keys)} expired cache entries")
        return len(expired_keys)

    def get_stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            total_size = 0
            active = 0
            for key, entry in self._entries.items():
                metadata = self._metadata.get(key)
                if metadata is not None:
                    total_size += metadata.size
                if now <= entry.expires_at:
                    active += 1
            total = len(self._entries)

        return CacheStats(
            total_entries=total,
            active_entries=active,
            expired_entries=total - active,
            total_size=total_size,
            average_size=total_size / total if total > 0 else 0,
        )

    def metadata(self, key: str) -> EntryMetadata | None:
        """Size/TTL bookkeeping for key, if tracked."""
        with self._lock:
            return self._metadata.get(key)

    # ------------------------------------------------------------------
    # Loader orchestration
    # ------------------------------------------------------------------

    async def preload_data(
        self, loaders: Mapping[str, Loader], ttl: float | None = None
    ) -> list[PreloadResult]:
        """Fill missing keys by running their loaders concurrently."""
        return await preload_data(self, loaders, ttl=ttl)

    async def smart_refresh(
        self,
        loaders: Mapping[str, Loader],
        staleness_threshold: float = DEFAULT_STALENESS_THRESHOLD,
        ttl: float | None = None,
    ) -> list[RefreshResult]:
        """Reload keys that are missing or older than staleness_threshold seconds."""
        return await smart_refresh(self, loaders, staleness_threshold, ttl=ttl)

    # ------------------------------------------------------------------
    # Persistence tier
    # ------------------------------------------------------------------

    def load_persisted(self) -> int:
        """Hydrate memory from the persistent store, dropping expired records."""
        now = self._clock()
        try:
            records = list(self.store.scan_all())
        except Exception as e:
            logger.warning(f"Failed to load cache from persistent storage: {e}")
            return 0

        loaded = 0
        with self._lock:
            for key, entry in records:
                if entry is None:
                    logger.warning(f"Discarding corrupt persisted record: {key}")
                    self._remove_persisted(key)
                elif now <= entry.expires_at:
                    self._entries[key] = entry
                    self._metadata[key] = self._rebuild_metadata(entry)
                    loaded += 1
                else:
                    self._remove_persisted(key)
        if records:
            logger.debug(f"Hydrated {loaded} of {len(records)} persisted entries")
        return loaded

    @property
    def persistence_suspended(self) -> bool:
        """True while writes stay memory-only after a quota error."""
        return self._clock() < self._persist_suspended_until

    def _persist(self, key: str, entry: CacheEntry) -> bool:
        if not self.policy(key):
            return False
        if self.persistence_suspended:
            logger.debug(f"Persistence suspended, keeping {key} in memory only")
            self._remove_persisted(key)
            return False
        try:
            self.store.write(key, entry)
            return True
        except StorageQuotaError as e:
            self._persist_suspended_until = self._clock() + self.quota_backoff
            logger.warning(
                f"Persistent storage full, memory-only for {self.quota_backoff}s: {e}"
            )
        except SerializationError as e:
            logger.warning(f"Skipping persistence of {key}: {e}")
        except Exception as e:
            logger.warning(f"Failed to persist {key}: {e}")
        # never leave an older version of the key behind
        self._remove_persisted(key)
        return False

    def _read_persisted(self, key: str) -> CacheEntry | None:
        try:
            return self.store.read(key)
        except ReadCorruptionError as e:
            logger.warning(f"{e}; removing it")
            self._remove_persisted(key)
        except Exception as e:
            logger.warning(f"Failed to read {key} from persistent storage: {e}")
        return None

    def _remove_persisted(self, key: str) -> bool:
        """Remove the persisted record of key. Returns whether one existed."""
        try:
            return self.store.remove(key)
        except Exception as e:
            logger.warning(f"Failed to remove {key} from persistent storage: {e}")
            return False

    def _rebuild_metadata(self, entry: CacheEntry) -> EntryMetadata:
        try:
            size = serialized_size(entry.data)
        except SerializationError:
            size = 0
        return EntryMetadata(
            size=size,
            ttl=entry.expires_at - entry.created_at,
            created=entry.created_at,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    @property
    def lock(self):
        """Get the internal lock (for advanced usage)."""
        return self._lock
