"""
Bounded TTL cache with LRU eviction, tag invalidation and an optional
persistent tier.
"""
import base64
import binascii
import json
import threading
import time
import logging
import zlib
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..errors import CacheDestroyedError
from .coalescer import RequestCoalescer
from .core import CacheEntry, CacheStats
from .persistence import KeyValueStore

logger = logging.getLogger("cache.store")

# Marks a lookup miss, so None can still be cached as a value
_MISSING = object()


class CacheStore:
    """
    In-memory cache with:
    - Per-entry TTL, checked lazily on read and eagerly by a periodic sweep
    - Optional max_size, enforced by evicting the least recently accessed entry
    - Tag-based bulk invalidation
    - Read-through loading via get_with_fallback
    - Optional mirroring into a KeyValueStore (hybrid tier)

    Lifecycle: construct -> use -> destroy(). The sweep thread starts in the
    constructor and stops in destroy(); every operation after destroy()
    raises CacheDestroyedError. The store is also a context manager.

    get_with_fallback does not coalesce concurrent loads for the same key
    unless coalesce_loads=True; by default each concurrent miss runs its own
    loader.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: Optional[int] = None,
        sweep_interval: Optional[float] = 60.0,
        persistent_store: Optional[KeyValueStore] = None,
        persistence_prefix: str = "cache_",
        coalesce_loads: bool = False,
        coalesce_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the store.

        Args:
            default_ttl: TTL in seconds for entries set without one
            max_size: Max entries held in memory (None = unbounded)
            sweep_interval: Seconds between expiry sweeps (None disables the thread)
            persistent_store: Optional KeyValueStore mirrored on writes
            persistence_prefix: Prefix for keys written to the persistent store
            coalesce_loads: Share one loader call among concurrent misses
            coalesce_timeout: Max seconds a coalesced caller waits
            clock: Epoch-seconds time source (injectable for tests)
        """
        if default_ttl < 0:
            raise ValueError(f"default_ttl must be >= 0, got {default_ttl}")
        if max_size is not None and max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")

        self.default_ttl = default_ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self.persistence_prefix = persistence_prefix
        self._persistent = persistent_store
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._destroyed = False
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout) if coalesce_loads else None

        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
        }

        # Cancellation token for the sweep thread
        self._stop_sweep = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None
        if sweep_interval:
            self._sweep_thread = threading.Thread(
                target=self._sweep_loop,
                name="cache-sweep",
                daemon=True,
            )
            self._sweep_thread.start()

    @classmethod
    def from_settings(
        cls,
        settings,
        persistent_store: Optional[KeyValueStore] = None,
    ) -> "CacheStore":
        """Build a store from a Settings object."""
        return cls(
            default_ttl=settings.cache_default_ttl_seconds,
            max_size=settings.cache_max_size,
            sweep_interval=settings.cache_sweep_interval_seconds,
            persistent_store=persistent_store,
            persistence_prefix=settings.cache_persistence_prefix,
            coalesce_loads=settings.cache_coalesce_loads,
        )

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Value for key if present and live, else default."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def has(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or replace key, evicting the LRU entry if the store is full."""
        self._store(key, value, ttl, frozenset())

    def set_with_tags(
        self,
        key: str,
        value: Any,
        tags: Iterable[str],
        ttl: Optional[float] = None,
    ) -> None:
        self._store(key, value, ttl, frozenset(tags))

    def delete(self, key: str) -> bool:
        """
        Remove key from the store.

        Returns:
            True if an in-memory entry was removed
        """
        with self._lock:
            self._ensure_alive()
            removed = self._entries.pop(key, None) is not None
            self._unpersist(key)
        if removed:
            logger.debug(f"Deleted cache entry: {key}")
        return removed

    def clear(self) -> int:
        """
        Remove every entry, including persisted ones.

        Returns:
            Number of in-memory entries cleared
        """
        with self._lock:
            self._ensure_alive()
            count = len(self._entries)
            self._entries.clear()
            if self._persistent is not None:
                for persisted_key in self._persisted_keys():
                    self._remove_persisted(persisted_key)
        logger.info(f"Cleared {count} cache entries")
        return count

    def size(self) -> int:
        with self._lock:
            self._ensure_alive()
            return len(self._entries)

    def keys(self) -> List[str]:
        """Snapshot of in-memory keys. Order is not guaranteed."""
        with self._lock:
            self._ensure_alive()
            return list(self._entries.keys())

    def sweep(self) -> int:
        """
        Remove every expired in-memory entry. Safe to call at any time.

        Returns:
            Number of entries removed
        """
        with self._lock:
            self._ensure_alive()
            removed = self._purge_expired(self._clock())
        if removed:
            logger.info(f"Swept {removed} expired cache entries")
        return removed

    def invalidate_by_tag(self, tag: str) -> int:
        """
        Remove every entry carrying tag, live or expired, from both tiers.

        Returns:
            Number of distinct keys removed
        """
        with self._lock:
            self._ensure_alive()
            removed = {key for key, entry in self._entries.items() if tag in entry.tags}
            for key in removed:
                del self._entries[key]
                self._unpersist(key)

            if self._persistent is not None:
                for persisted_key in self._persisted_keys():
                    key = persisted_key[len(self.persistence_prefix):]
                    if key in removed:
                        continue
                    record = self._read_persisted(persisted_key)
                    if record is not None and tag in record.get("tags", ()):
                        self._remove_persisted(persisted_key)
                        removed.add(key)

        logger.info(f"Invalidated {len(removed)} entries with tag: {tag}")
        return len(removed)

    def get_with_fallback(
        self,
        key: str,
        loader: Callable[[], Any],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Cached value for key, or the loader's result (which is then cached).

        Loader errors propagate and nothing is cached.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value

        if self._coalescer is not None:
            return self._coalescer.get_or_load(
                key, lambda: self._load_and_store(key, loader, ttl)
            )
        return self._load_and_store(key, loader, ttl)

    def warm(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Run loader unconditionally and cache its result."""
        return self._load_and_store(key, loader, ttl)

    def destroy(self) -> None:
        """
        Stop the sweep thread and drop all in-memory entries.

        Persisted entries are left in place. Calling destroy() again is a no-op.
        """
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            self._stop_sweep.set()
            self._entries.clear()

        thread = self._sweep_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        logger.debug("Cache store destroyed")

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: self.get(key) for key in keys}

    def set_many(self, items: Iterable[Sequence[Any]]) -> None:
        """Set (key, value) or (key, value, ttl) tuples in order."""
        for item in items:
            key, value = item[0], item[1]
            ttl = item[2] if len(item) > 2 else None
            self.set(key, value, ttl)

    @staticmethod
    def estimate_size(value: Any) -> int:
        """Rough size in bytes: JSON length at two bytes per character."""
        return len(json.dumps(value, default=str)) * 2

    def set_compressed(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value as base64(zlib(json)); falls back to the raw value."""
        try:
            packed = base64.b64encode(
                zlib.compress(json.dumps(value).encode("utf-8"))
            ).decode("ascii")
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to compress {key}, storing raw: {e}")
            self.set(key, value, ttl)
            return
        self.set(key, packed, ttl)

    def get_compressed(self, key: str, default: Any = None) -> Any:
        """Read a value written by set_compressed."""
        packed = self._lookup(key)
        if packed is _MISSING:
            return default
        if not isinstance(packed, str):
            return packed
        try:
            return json.loads(zlib.decompress(base64.b64decode(packed)).decode("utf-8"))
        except (binascii.Error, zlib.error, ValueError) as e:
            logger.warning(f"Failed to decompress {key}, returning raw value: {e}")
            return packed

    def get_stats(self) -> CacheStats:
        with self._lock:
            self._ensure_alive()
            now = self._clock()
            active = sum(1 for entry in self._entries.values() if entry.is_live(now))
            total_size = sum(
                self.estimate_size(entry.to_record()) for entry in self._entries.values()
            )
            return CacheStats(
                total_items=len(self._entries),
                active_items=active,
                expired_items=len(self._entries) - active,
                total_size_bytes=total_size,
                hits=self._stats["hits"],
                misses=self._stats["misses"],
                evictions=self._stats["evictions"],
                max_size=self.max_size or 0,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise CacheDestroyedError("Cache store has been destroyed")

    def _lookup(self, key: str) -> Any:
        with self._lock:
            self._ensure_alive()
            now = self._clock()
            entry = self._entries.get(key)

            if entry is not None:
                if entry.is_live(now):
                    entry.touch(now)
                    self._stats["hits"] += 1
                    logger.debug(f"CACHE HIT: {key} [age={entry.age_seconds(now):.1f}s]")
                    return entry.value
                del self._entries[key]
                self._unpersist(key)
                logger.debug(f"CACHE EXPIRED: {key}")
            elif self._persistent is not None:
                value = self._restore_persisted(key, now)
                if value is not _MISSING:
                    self._stats["hits"] += 1
                    return value

            self._stats["misses"] += 1
            logger.debug(f"CACHE MISS: {key}")
            return _MISSING

    def _store(
        self,
        key: str,
        value: Any,
        ttl: Optional[float],
        tags: frozenset,
        created_at: Optional[float] = None,
        persist: bool = True,
    ) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")

        with self._lock:
            self._ensure_alive()
            now = self._clock()
            if key in self._entries:
                # Replacing: re-insert so dict order tracks insertion
                del self._entries[key]
            elif self.max_size is not None and len(self._entries) >= self.max_size:
                self._make_room(now)

            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now if created_at is None else created_at,
                last_accessed_at=now,
                ttl=ttl,
                tags=tags,
            )
            self._entries[key] = entry
            if persist:
                self._persist(entry)

    def _make_room(self, now: float) -> None:
        # Expired entries go first; only evict a live one if that was not enough
        self._purge_expired(now)
        if len(self._entries) < self.max_size:
            return

        victim = min(
            self._entries.values(),
            key=lambda entry: (entry.last_accessed_at, entry.created_at),
        )
        del self._entries[victim.key]
        self._stats["evictions"] += 1
        logger.info(f"Evicted LRU entry: {victim.key}")

    def _purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if not entry.is_live(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _load_and_store(self, key: str, loader: Callable[[], Any], ttl: Optional[float]) -> Any:
        try:
            value = loader()
        except Exception as e:
            logger.warning(f"Loader failed for {key}: {e}")
            raise
        self.set(key, value, ttl)
        return value

    def _sweep_loop(self) -> None:
        while not self._stop_sweep.wait(self.sweep_interval):
            try:
                self.sweep()
            except CacheDestroyedError:
                return

    # Persistent tier. Failures here are logged and never fail the
    # in-memory operation.

    def _persisted_key(self, key: str) -> str:
        return f"{self.persistence_prefix}{key}"

    def _persisted_keys(self) -> List[str]:
        try:
            return [k for k in self._persistent.list_keys() if k.startswith(self.persistence_prefix)]
        except Exception as e:
            logger.warning(f"Failed to list persisted cache keys: {e}")
            return []

    def _persist(self, entry: CacheEntry) -> None:
        if self._persistent is None:
            return
        try:
            payload = json.dumps(entry.to_record())
            self._persistent.set_item(self._persisted_key(entry.key), payload)
        except Exception as e:
            logger.warning(f"Failed to persist {entry.key}: {e}")

    def _unpersist(self, key: str) -> None:
        if self._persistent is not None:
            self._remove_persisted(self._persisted_key(key))

    def _remove_persisted(self, persisted_key: str) -> None:
        try:
            self._persistent.remove_item(persisted_key)
        except Exception as e:
            logger.warning(f"Failed to remove persisted {persisted_key}: {e}")

    def _read_persisted(self, persisted_key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self._persistent.get_item(persisted_key)
            if raw is None:
                return None
            record = json.loads(raw)
            # Validate the fields the TTL check relies on
            float(record["timestamp"])
            float(record["ttl"])
            return record
        except Exception as e:
            logger.warning(f"Failed to read persisted {persisted_key}: {e}")
            return None

    def _restore_persisted(self, key: str, now: float) -> Any:
        """Load a live persisted entry back into memory; drop an expired one."""
        persisted_key = self._persisted_key(key)
        record = self._read_persisted(persisted_key)
        if record is None:
            return _MISSING

        created_at = float(record["timestamp"])
        ttl = float(record["ttl"])
        if now - created_at > ttl:
            self._remove_persisted(persisted_key)
            logger.debug(f"Removed expired persisted entry: {key}")
            return _MISSING

        self._store(
            key,
            record.get("data"),
            ttl,
            frozenset(record.get("tags", ())),
            created_at=created_at,
            persist=False,
        )
        logger.debug(f"Restored {key} from persistent tier")
        return record.get("data")
