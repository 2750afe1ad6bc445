"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple


class CacheType(Enum):
    """Freshness tiers for cached portal data."""
    HIGH_PRIORITY = "high"        # dashboards, upcoming sessions
    MEDIUM_PRIORITY = "medium"    # group lists, calendars
    LOW_PRIORITY = "low"          # reference data that rarely changes
    NO_CACHE = "no_cache"         # always refetched


@dataclass
class CacheEntry:
    """
    A cached value with the information needed to judge its freshness.

    `stored_at` comes from the store's monotonic clock; `updated_at` is the
    wall-clock time reported to consumers as "last updated".
    """
    key: str
    value: Any
    stored_at: float
    ttl: float
    updated_at: datetime

    def age(self, now: float) -> float:
        """Seconds since the value was stored."""
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        """Check if the value is still within its TTL."""
        return self.age(now) < self.ttl


class CacheLookup(NamedTuple):
    """Result of a store read: `(value, found, fresh)`."""
    value: Any
    found: bool
    fresh: bool


MISS = CacheLookup(value=None, found=False, fresh=False)
