"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from enum import Enum


class CacheSource(Enum):
    """Where the value handed back by the cache came from."""
    FRESH = "fresh"        # Within the fresh part of its TTL
    STALE = "stale"        # Served from cache while revalidating, or after a failed refresh
    UPSTREAM = "upstream"  # Fetched during this call
    INITIAL = "initial"    # Nothing cached, caller's initial value


@dataclass
class CacheEntry:
    """
    A cached value with the timestamps that drive its freshness.

    ``refreshing`` is the claim marker for a background refresh;
    ``last_error`` holds the failure of the most recent refresh attempt
    and is cleared when a refresh succeeds (the entry is replaced).
    """
    key: str
    value: Any
    fetched_at: float
    expires_at: float
    refreshing: bool = False
    last_error: Optional[BaseException] = None

    def __post_init__(self):
        if self.expires_at < self.fetched_at:
            raise ValueError(f"expires_at precedes fetched_at for {self.key}")

    @property
    def ttl(self) -> float:
        return self.expires_at - self.fetched_at

    def age(self, now: float) -> float:
        """Seconds since the value was fetched."""
        return now - self.fetched_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def needs_refresh(self, now: float, threshold: float) -> bool:
        """True once more than ``threshold`` of the TTL has elapsed."""
        return self.age(now) > self.ttl * threshold


@dataclass
class CacheResult:
    """Outcome of a cache read."""
    value: Any
    loading: bool = False
    error: Optional[BaseException] = None
    is_stale: bool = False
    source: CacheSource = CacheSource.FRESH
    fetched_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        last_updated = None
        if self.fetched_at is not None:
            last_updated = (
                datetime.fromtimestamp(self.fetched_at, tz=timezone.utc)
                .isoformat()
                .replace("+00:00", "Z")
            )
        return {
            "data": self.value,
            "loading": self.loading,
            "isStale": self.is_stale,
            "error": str(self.error) if self.error else None,
            "cacheSource": self.source.value,
            "lastUpdated": last_updated,
        }


@dataclass
class CacheStats:
    """Point-in-time classification of every entry."""
    total: int = 0
    valid: int = 0
    stale: int = 0
    expired: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalEntries": self.total,
            "validEntries": self.valid,
            "staleEntries": self.stale,
            "expiredEntries": self.expired,
        }
