"""
TTL configuration by cache type.
"""
from typing import Dict, Optional

from config.settings import Settings, settings as default_settings

from .core import CacheType


def build_ttl_config(config: Optional[Settings] = None) -> Dict[CacheType, float]:
    """
    Map each cache type to its TTL in seconds.

    A TTL of 0 means values are stale as soon as they are stored, so every
    read goes back to the network.
    """
    config = config or default_settings
    return {
        CacheType.HIGH_PRIORITY: config.ttl_high_priority_seconds,
        CacheType.MEDIUM_PRIORITY: config.ttl_medium_priority_seconds,
        CacheType.LOW_PRIORITY: config.ttl_low_priority_seconds,
        CacheType.NO_CACHE: 0.0,
    }


TTL_CONFIG: Dict[CacheType, float] = build_ttl_config()


def get_ttl_for_cache_type(
    cache_type: CacheType,
    ttl_config: Optional[Dict[CacheType, float]] = None,
) -> float:
    """
    Get the TTL for a cache type.

    Args:
        cache_type: The cache tier
        ttl_config: Mapping to use instead of the module defaults

    Returns:
        TTL in seconds (medium priority TTL for unknown tiers)
    """
    config = ttl_config or TTL_CONFIG
    return config.get(cache_type, config[CacheType.MEDIUM_PRIORITY])
