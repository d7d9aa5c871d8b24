"""
Read-through caching with request coalescing and stale-while-revalidate.
"""
from .core import CacheEntry, CacheResult, CacheSource, CacheStats
from .ttl_policies import (
    TTL_CONFIG,
    DataCategory,
    get_ttl_for_category,
    get_category_for_key,
    get_ttl_for_key,
)
from .coalescer import RequestCoalescer
from .manager import CacheManager, CacheConfigurationError
from .keys import CacheKeys, invalidate_for_write, invalidate_tenant
from .prefetch import PrefetchJob, PrefetchScheduler, prefetch_all

__all__ = [
    # Core types
    "CacheEntry",
    "CacheResult",
    "CacheSource",
    "CacheStats",
    # TTL policies
    "TTL_CONFIG",
    "DataCategory",
    "get_ttl_for_category",
    "get_category_for_key",
    "get_ttl_for_key",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "CacheManager",
    "CacheConfigurationError",
    # Keys and invalidation
    "CacheKeys",
    "invalidate_for_write",
    "invalidate_tenant",
    # Warm-up
    "PrefetchJob",
    "PrefetchScheduler",
    "prefetch_all",
]
