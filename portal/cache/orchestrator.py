"""
Per-consumer fetch orchestration.

A FetchOrchestrator ties one cache key to one fetch function for the
lifetime of a consumer (a screen): it serves fresh cache hits, fetches on
miss or expiry through the shared coalescer, keeps loading / refreshing /
error state, and keeps a refresh subscription registered while alive.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .coalescer import FetchFn, RequestCoalescer, call_fetch
from .core import CacheType
from .refresh import RefreshCoordinator
from .store import CacheStore
from .ttl_policies import get_ttl_for_cache_type

logger = logging.getLogger("cache.orchestrator")

DEFAULT_ERROR_MESSAGE = "Failed to load data"


@dataclass(frozen=True)
class FetchOptions:
    """How a consumer wants its key cached and refreshed."""
    ttl: Optional[float] = None
    cache_type: CacheType = CacheType.MEDIUM_PRIORITY
    auto_refresh: bool = True
    interval: Optional[float] = None
    enabled: bool = True


@dataclass(frozen=True)
class FetchResult:
    """Snapshot of a consumer's view of its data."""
    key: Optional[str] = None
    value: Any = None
    is_loading: bool = False
    is_refreshing: bool = False
    error: Optional[BaseException] = None
    last_updated: Optional[datetime] = None

    @property
    def has_value(self) -> bool:
        return self.last_updated is not None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or DEFAULT_ERROR_MESSAGE


Listener = Callable[[FetchResult], None]


class FetchOrchestrator:
    """
    One consumer's interest in one cache key.

    Usage:
        orchestrator = FetchOrchestrator(store, coordinator, coalescer)
        result = await orchestrator.request(
            key, lambda: teacher_service.get_teacher_groups("T1"),
            interval=300,
        )
        ...
        orchestrator.dispose()
    """

    def __init__(
        self,
        store: CacheStore,
        coordinator: RefreshCoordinator,
        coalescer: RequestCoalescer,
        default_interval: float = 300.0,
        ttl_config: Optional[Dict[CacheType, float]] = None,
    ):
        """
        Initialize an unbound orchestrator.

        Args:
            store: Shared cache store
            coordinator: Shared refresh coordinator
            coalescer: Shared single-flight map (one per store)
            default_interval: Refresh interval used when options give none
            ttl_config: Tier -> TTL table used when options give no ttl
                (the settings-derived table when omitted)
        """
        self._store = store
        self._coordinator = coordinator
        self._coalescer = coalescer
        self._default_interval = default_interval
        self._ttl_config = ttl_config

        self._key: Optional[str] = None
        self._fetch_fn: Optional[FetchFn] = None
        self._options = FetchOptions()
        self._unregister: Optional[Callable[[], None]] = None

        self._result = FetchResult()
        self._pending = 0
        self._listeners: List[Listener] = []
        self._disposed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def key(self) -> Optional[str]:
        return self._key

    @property
    def options(self) -> FetchOptions:
        return self._options

    @property
    def state(self) -> FetchResult:
        return self._result

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def ttl(self) -> float:
        if self._options.ttl is not None:
            return self._options.ttl
        return get_ttl_for_cache_type(self._options.cache_type, self._ttl_config)

    @property
    def interval(self) -> float:
        if self._options.interval is not None:
            return self._options.interval
        return self._default_interval

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` with every new state; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes: Any) -> FetchResult:
        if self._disposed:
            return self._result
        self._result = replace(self._result, **changes)
        for listener in list(self._listeners):
            listener(self._result)
        return self._result

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(
        self,
        key: str,
        fetch_fn: FetchFn,
        options: Optional[FetchOptions] = None,
    ) -> None:
        """
        Attach this orchestrator to a key and fetch function.

        Re-binding to the same key only swaps the fetch function and
        options; binding to a different key drops the old subscription and
        state first.

        Raises:
            ValueError: If key is empty
            TypeError: If fetch_fn is not callable
            RuntimeError: If the orchestrator was disposed
        """
        self._ensure_alive()
        if not key or not isinstance(key, str):
            raise ValueError("cache key must be a non-empty string")
        if not callable(fetch_fn):
            raise TypeError("fetch_fn must be callable")
        options = options or self._options

        if key != self._key:
            self._release_subscription()
            self._key = key
            self._result = FetchResult(key=key)
            self._pending = 0
            self._fetch_fn = fetch_fn
            self._options = options
            self._register()
            return

        self._fetch_fn = fetch_fn
        if options != self._options:
            self._options = options
            self._release_subscription()
            self._register()

    def _register(self) -> None:
        if not (self._options.enabled and self._options.auto_refresh):
            return
        self._unregister = self._coordinator.register(
            self._key, self._refresh_from_coordinator, self.interval
        )

    def _release_subscription(self) -> None:
        if self._unregister is not None:
            self._unregister()
            self._unregister = None

    async def _refresh_from_coordinator(self) -> None:
        if self._disposed:
            return
        await self.force_refresh()

    def _ensure_alive(self) -> None:
        if self._disposed:
            raise RuntimeError("orchestrator has been disposed")

    def _ensure_bound(self) -> None:
        self._ensure_alive()
        if self._key is None or self._fetch_fn is None:
            raise RuntimeError("orchestrator is not bound to a key; call request(key, fetch_fn) first")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def request(
        self,
        key: Optional[str] = None,
        fetch_fn: Optional[FetchFn] = None,
        *,
        ttl: Optional[float] = None,
        cache_type: Optional[CacheType] = None,
        auto_refresh: Optional[bool] = None,
        interval: Optional[float] = None,
        enabled: Optional[bool] = None,
        force_refresh: bool = False,
    ) -> FetchResult:
        """
        Return the data for the key, from cache when fresh.

        With `key` and `fetch_fn` the orchestrator is (re)bound first;
        without them the current binding is used.

        Returns:
            The state after the read or fetch. On failure the previous
            value is kept and `error` is set.
        """
        if key is not None or fetch_fn is not None:
            self.bind(
                key if key is not None else self._key,
                fetch_fn if fetch_fn is not None else self._fetch_fn,
                self._merge_options(ttl, cache_type, auto_refresh, interval, enabled),
            )
        else:
            self._ensure_bound()
            options = self._merge_options(ttl, cache_type, auto_refresh, interval, enabled)
            if options != self._options:
                self.bind(self._key, self._fetch_fn, options)

        if not self._options.enabled:
            return self._result
        if force_refresh:
            return await self.force_refresh()

        key = self._key
        value, found, fresh = self._store.get(key)
        if found and fresh:
            return self._publish(value=value, last_updated=self._entry_updated_at(key))

        if found and not self._result.has_value:
            # Stale value: show it while the refetch runs.
            self._publish(value=value, last_updated=self._entry_updated_at(key))

        return await self._fetch(refreshing=self._result.has_value)

    async def force_refresh(self) -> FetchResult:
        """Fetch regardless of freshness; the store is overwritten on success."""
        self._ensure_bound()
        if not self._options.enabled:
            return self._result
        return await self._fetch(refreshing=True)

    def invalidate(self) -> int:
        """Drop exactly this key from the store without fetching."""
        self._ensure_bound()
        logger.debug(f"Invalidating {self._key}")
        return self._store.delete(self._key)

    def set_optimistic(self, value: Any) -> FetchResult:
        """
        Write a locally known value to the store and the held state
        immediately. The next real fetch overwrites it.
        """
        self._ensure_bound()
        self._store.put(self._key, value, self.ttl)
        return self._publish(value=value, last_updated=self._entry_updated_at(self._key))

    def reset_error(self) -> FetchResult:
        return self._publish(error=None)

    def dispose(self) -> None:
        """Unregister from the coordinator and stop publishing state. Idempotent."""
        if self._disposed:
            return
        self._release_subscription()
        self._disposed = True
        self._listeners.clear()
        logger.debug(f"Disposed orchestrator for {self._key}")

    async def __aenter__(self) -> "FetchOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _merge_options(
        self,
        ttl: Optional[float],
        cache_type: Optional[CacheType],
        auto_refresh: Optional[bool],
        interval: Optional[float],
        enabled: Optional[bool],
    ) -> FetchOptions:
        changes = {
            name: value
            for name, value in (
                ("ttl", ttl),
                ("cache_type", cache_type),
                ("auto_refresh", auto_refresh),
                ("interval", interval),
                ("enabled", enabled),
            )
            if value is not None
        }
        return replace(self._options, **changes) if changes else self._options

    def _entry_updated_at(self, key: str) -> datetime:
        entry = self._store.get_entry(key)
        if entry is None:
            return datetime.now(timezone.utc)
        return entry.updated_at

    async def _fetch(self, refreshing: bool) -> FetchResult:
        key = self._key
        fetch_fn = self._fetch_fn
        ttl = self.ttl

        async def load() -> Any:
            value = await call_fetch(fetch_fn)
            self._store.put(key, value, ttl)
            return value

        self._pending += 1
        if refreshing:
            self._publish(is_refreshing=True)
        else:
            self._publish(is_loading=True)

        try:
            value = await self._coalescer.get_or_fetch(key, load)
        except Exception as e:
            logger.debug(f"Keeping previous value for {key} after failure: {e}")
            if key == self._key:
                self._publish(error=e)
        else:
            if key == self._key:
                self._publish(
                    value=value,
                    error=None,
                    last_updated=self._entry_updated_at(key),
                )
        finally:
            if key == self._key:
                self._pending = max(self._pending - 1, 0)
                if self._pending == 0:
                    self._publish(is_loading=False, is_refreshing=False)
        return self._result
