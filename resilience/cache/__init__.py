"""
TTL cache with LRU eviction, tag invalidation and an optional persistent tier.
"""
from .core import CacheEntry, CacheStats
from .coalescer import RequestCoalescer
from .persistence import InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore
from .store import CacheStore

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStats",
    # Store
    "CacheStore",
    # Persistent tier
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SQLiteKeyValueStore",
    # Coalescing
    "RequestCoalescer",
]
