"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet


@dataclass
class CacheEntry:
    """
    A cached value with the timestamps used for expiry and LRU eviction.

    Times are epoch seconds from the store's clock.
    """
    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    ttl: float
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was created."""
        return now - self.created_at

    def is_live(self, now: float) -> bool:
        """An entry stays live while its age is within its TTL."""
        return self.age_seconds(now) <= self.ttl

    def touch(self, now: float) -> None:
        self.last_accessed_at = now

    def to_record(self) -> Dict[str, Any]:
        """Serializable form used by the persistent tier."""
        return {
            "data": self.value,
            "timestamp": self.created_at,
            "ttl": self.ttl,
            "tags": sorted(self.tags),
        }


@dataclass
class CacheStats:
    """
    Snapshot of cache contents and counters.
    """
    total_items: int
    active_items: int
    expired_items: int
    total_size_bytes: int
    hits: int
    misses: int
    evictions: int
    max_size: int = 0

    @property
    def hit_rate_percent(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 1) if total > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "totalItems": self.total_items,
            "activeItems": self.active_items,
            "expiredItems": self.expired_items,
            "totalSize": self.total_size_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hitRatePercent": self.hit_rate_percent,
            "maxSize": self.max_size or None,
        }
