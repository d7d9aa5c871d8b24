"""
TTL configuration and key-to-category mapping.
"""
from enum import Enum
from typing import Dict, Optional


class DataCategory(Enum):
    """Categories of data with different caching behaviors."""
    SCREENS = "screens"                 # 1 minute, device status changes often
    PLAYLISTS = "playlists"             # 2 minutes
    MEDIA = "media"                     # 2 minutes
    CAMPAIGNS = "campaigns"             # 2 minutes
    DASHBOARD = "dashboard"             # 2 minutes
    TEMPLATES = "templates"             # 5 minutes, global and rarely edited
    PLAYER_CONTENT = "player_content"   # 30 seconds, what a screen should be showing
    USER = "user"                       # 2 minutes
    FEATURE_FLAGS = "feature_flags"     # 1 minute
    USAGE = "usage"                     # 5 minutes, quota counters


# TTL Configuration by category (in seconds)
TTL_CONFIG: Dict[DataCategory, float] = {
    DataCategory.SCREENS: 60,
    DataCategory.PLAYLISTS: 120,
    DataCategory.MEDIA: 120,
    DataCategory.CAMPAIGNS: 120,
    DataCategory.DASHBOARD: 120,
    DataCategory.TEMPLATES: 300,
    DataCategory.PLAYER_CONTENT: 30,
    DataCategory.USER: 120,
    DataCategory.FEATURE_FLAGS: 60,
    DataCategory.USAGE: 300,
}

DEFAULT_CATEGORY = DataCategory.DASHBOARD

# Key segment -> category; first match wins
_SEGMENT_CATEGORIES = (
    ("screens", DataCategory.SCREENS),
    ("playlists", DataCategory.PLAYLISTS),
    ("media", DataCategory.MEDIA),
    ("campaigns", DataCategory.CAMPAIGNS),
    ("dashboard", DataCategory.DASHBOARD),
    ("templates", DataCategory.TEMPLATES),
    ("content", DataCategory.PLAYER_CONTENT),
    ("flags", DataCategory.FEATURE_FLAGS),
    ("usage", DataCategory.USAGE),
)


def get_ttl_for_category(category: Optional[DataCategory]) -> float:
    """
    Get the TTL for a data category.

    Args:
        category: The data category (None falls back to the default category)

    Returns:
        TTL in seconds
    """
    if category is None:
        category = DEFAULT_CATEGORY
    return TTL_CONFIG.get(category, TTL_CONFIG[DEFAULT_CATEGORY])


def get_category_for_key(cache_key: str) -> DataCategory:
    """
    Determine the data category from a namespaced cache key.

    Keys look like ``tenant:{id}:screens:list``, ``user:{id}:profile``
    or ``global:templates:list`` (see ``keys.CacheKeys``).
    """
    segments = cache_key.split(":")
    if segments and segments[0] == "user":
        return DataCategory.USER
    for segment in segments:
        for name, category in _SEGMENT_CATEGORIES:
            if segment == name:
                return category
    return DEFAULT_CATEGORY


def get_ttl_for_key(cache_key: str) -> float:
    """TTL in seconds for a namespaced cache key."""
    return get_ttl_for_category(get_category_for_key(cache_key))
