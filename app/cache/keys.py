"""
Tenant-aware cache key builders and write-driven invalidation.

Every tenant-scoped key starts with ``tenant:{tenant_id}:`` so a whole
tenant can be dropped with one prefix invalidation.
"""
import json
import logging
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("cache.keys")


def _encode_filter(filters: Optional[Dict[str, Any]]) -> str:
    """Stable encoding so equal filters always produce the same key."""
    return json.dumps(filters or {}, sort_keys=True, separators=(",", ":"), default=str)


class CacheKeys:
    """Key builders for cached reads."""

    # Tenant scoped
    @staticmethod
    def tenant_prefix(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:"

    @staticmethod
    def screens(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:screens:list"

    @staticmethod
    def screens_filtered(tenant_id: str, filters: Dict[str, Any]) -> str:
        return f"tenant:{tenant_id}:screens:list:{_encode_filter(filters)}"

    @staticmethod
    def screen(tenant_id: str, screen_id: str) -> str:
        return f"tenant:{tenant_id}:screens:{screen_id}"

    @staticmethod
    def screen_content(tenant_id: str, screen_id: str) -> str:
        return f"tenant:{tenant_id}:content:{screen_id}"

    @staticmethod
    def playlists(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:playlists:list"

    @staticmethod
    def playlists_filtered(tenant_id: str, filters: Dict[str, Any]) -> str:
        return f"tenant:{tenant_id}:playlists:list:{_encode_filter(filters)}"

    @staticmethod
    def playlist(tenant_id: str, playlist_id: str) -> str:
        return f"tenant:{tenant_id}:playlists:{playlist_id}"

    @staticmethod
    def media(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:media:list"

    @staticmethod
    def media_filtered(tenant_id: str, filters: Dict[str, Any]) -> str:
        return f"tenant:{tenant_id}:media:list:{_encode_filter(filters)}"

    @staticmethod
    def media_asset(tenant_id: str, media_id: str) -> str:
        return f"tenant:{tenant_id}:media:{media_id}"

    @staticmethod
    def campaigns(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:campaigns:list"

    @staticmethod
    def campaign(tenant_id: str, campaign_id: str) -> str:
        return f"tenant:{tenant_id}:campaigns:{campaign_id}"

    @staticmethod
    def dashboard_stats(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:dashboard:stats"

    @staticmethod
    def dashboard_counts(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:dashboard:counts"

    @staticmethod
    def feature_flags(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:flags"

    @staticmethod
    def usage(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:usage"

    @staticmethod
    def playback_summary(tenant_id: str) -> str:
        return f"tenant:{tenant_id}:dashboard:playback"

    # User scoped
    @staticmethod
    def profile(user_id: str) -> str:
        return f"user:{user_id}:profile"

    @staticmethod
    def permissions(user_id: str) -> str:
        return f"user:{user_id}:permissions"

    # Player
    @staticmethod
    def content_resolution(screen_id: str) -> str:
        return f"content:resolution:{screen_id}"

    # Global
    @staticmethod
    def templates() -> str:
        return "global:templates:list"

    @staticmethod
    def template(template_id: str) -> str:
        return f"global:templates:{template_id}"


# Resource written -> tenant key segments whose cached reads it affects
WRITE_INVALIDATIONS: Dict[str, Tuple[str, ...]] = {
    "screens": ("screens", "content", "dashboard"),
    "playlists": ("playlists", "content", "dashboard"),
    "media": ("media", "dashboard"),
    "campaigns": ("campaigns",),
    "dashboard": ("dashboard",),
    "flags": ("flags",),
    "usage": ("usage", "dashboard"),
}


def invalidate_for_write(cache, resource: str, tenant_id: Optional[str] = None) -> int:
    """
    Drop the cached reads a write to ``resource`` makes out of date.

    Args:
        cache: CacheManager
        resource: Written resource ("screens", "playlists", "templates", ...)
        tenant_id: Owning tenant (ignored for global resources)

    Returns:
        Number of entries invalidated
    """
    if resource == "templates":
        return cache.invalidate_by_prefix("global:templates:")

    segments = WRITE_INVALIDATIONS.get(resource)
    if segments is None:
        raise ValueError(f"Unknown resource for invalidation: {resource!r}")
    if not tenant_id:
        raise ValueError(f"tenant_id is required to invalidate {resource}")

    prefix = CacheKeys.tenant_prefix(tenant_id)
    total = 0
    for segment in segments:
        total += cache.invalidate_by_prefix(f"{prefix}{segment}")
    logger.debug(f"Write to {resource} for tenant {tenant_id} invalidated {total} entries")
    return total


def invalidate_tenant(cache, tenant_id: str) -> int:
    """Drop every cached read belonging to a tenant."""
    return cache.invalidate_by_prefix(CacheKeys.tenant_prefix(tenant_id))
