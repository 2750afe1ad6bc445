"""
In-memory cache store with per-entry expiry.

Entries are only ever removed by invalidation or a full clear; an expired
entry stays readable (flagged stale) so callers can fall back to it.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .core import MISS, CacheEntry, CacheLookup

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Key -> entry map guarded by a single lock.

    The lock only ever protects in-memory mutations, so it is never held
    across a fetch.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the store.

        Args:
            default_ttl: TTL in seconds used when `put` is called without one
            clock: Monotonic time source in seconds (injectable for tests)
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._default_ttl = default_ttl

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "writes": 0,
            "invalidated": 0,
        }

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def now(self) -> float:
        """Current time on the store's clock."""
        return self._clock()

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or replace the entry for `key`, restarting its TTL."""
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
            updated_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._entries[key] = entry
            self._stats["writes"] += 1
        logger.debug(f"CACHE PUT: {key} [ttl={entry.ttl}s]")

    def get(self, key: str) -> CacheLookup:
        """
        Read the entry for `key`.

        Returns:
            (value, found, fresh). A stale entry is returned with
            fresh=False; a missing one as (None, False, False).
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                logger.debug(f"CACHE MISS: {key}")
                return MISS
            fresh = entry.is_fresh(self._clock())
            self._stats["hits_fresh" if fresh else "hits_stale"] += 1

        if fresh:
            logger.debug(f"CACHE HIT (fresh): {key}")
        else:
            logger.debug(f"CACHE HIT (stale): {key}")
        return CacheLookup(value=entry.value, found=True, fresh=fresh)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry access, without touching hit/miss statistics."""
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, key_or_prefix: Optional[str] = None) -> int:
        """
        Remove entries.

        Args:
            key_or_prefix: A full key removes that entry only; any other
                string removes every entry whose key starts with it; None
                clears the store.

        Returns:
            Number of entries removed
        """
        if key_or_prefix is None:
            return self.clear()
        if self.delete(key_or_prefix):
            return 1
        return self.invalidate_prefix(key_or_prefix)

    def delete(self, key: str) -> int:
        """Remove exactly `key`; never falls back to prefix matching."""
        with self._lock:
            if key not in self._entries:
                return 0
            del self._entries[key]
            self._stats["invalidated"] += 1
        logger.info(f"Invalidated cache: {key}")
        return 1

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with `prefix`."""
        return self.invalidate_where(lambda key: key.startswith(prefix), label=prefix)

    def invalidate_where(
        self,
        predicate: Callable[[str], bool],
        label: Optional[str] = None,
    ) -> int:
        """Remove every entry whose key satisfies `predicate`."""
        with self._lock:
            to_delete = [k for k in self._entries if predicate(k)]
            for key in to_delete:
                del self._entries[key]
            self._stats["invalidated"] += len(to_delete)
        if to_delete:
            logger.info(
                f"Invalidated {len(to_delete)} entries matching '{label or predicate}'"
            )
        return len(to_delete)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._stats["invalidated"] += count
        logger.info(f"Cleared {count} cache entries")
        return count

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            now = self._clock()
            fresh_entries = sum(1 for e in self._entries.values() if e.is_fresh(now))
            total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
            total_reads = total_hits + self._stats["misses"]
            hit_rate = (self._stats["hits_fresh"] / total_reads * 100) if total_reads > 0 else 0

            return {
                "entries": len(self._entries),
                "fresh_entries": fresh_entries,
                "stale_entries": len(self._entries) - fresh_entries,
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
            }
