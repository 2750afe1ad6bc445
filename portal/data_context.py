"""
Composition root for the portal's data layer.

One DataContext owns the cache store, the single-flight coalescer, the
refresh coordinator and the platform signal sources, and hands out
orchestrators bound to them.
"""
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

from config.settings import Settings, settings as default_settings

from portal.cache import (
    AmbientState,
    CacheStore,
    CacheType,
    FetchOptions,
    FetchOrchestrator,
    ManualSignalSource,
    RefreshCoordinator,
    RequestCoalescer,
    build_ttl_config,
    generate_key,
    param_matcher,
)
from portal.cache.coalescer import FetchFn

logger = logging.getLogger("portal.data_context")


class DataContext:
    """
    Application-wide data services.

    Usage:
        context = DataContext()
        groups = context.use_fetch(
            "teacher", "getTeacherGroups", {"teacherId": "T1"},
            lambda: teacher_service.get_teacher_groups("T1"),
        )
        result = await groups.request()
        ...
        await context.refresh_all_data()
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or default_settings
        self.ttl_config = build_ttl_config(self.config)

        self.store = CacheStore(default_ttl=self.config.default_ttl_seconds, clock=clock)
        self.coalescer = RequestCoalescer(timeout=self.config.fetch_timeout_seconds)
        self.ambient = AmbientState()
        self.coordinator = RefreshCoordinator(
            self.store,
            ambient=self.ambient,
            high_priority_prefixes=self.config.high_priority_prefixes,
        )

        self.connectivity = ManualSignalSource("connectivity", initial=self.ambient.is_online)
        self.lifecycle = ManualSignalSource("foreground", initial=self.ambient.is_foreground)
        self.coordinator.attach(connectivity=self.connectivity, lifecycle=self.lifecycle)
        logger.info("Data context initialised")

    def orchestrator(self) -> FetchOrchestrator:
        """An unbound orchestrator wired to this context."""
        return FetchOrchestrator(
            self.store,
            self.coordinator,
            self.coalescer,
            default_interval=self.config.refresh_interval_seconds,
            ttl_config=self.ttl_config,
        )

    def use_fetch(
        self,
        service: str,
        method: str,
        params: Optional[Mapping[str, Any]],
        fetch_fn: FetchFn,
        cache_type: CacheType = CacheType.MEDIUM_PRIORITY,
        auto_refresh: bool = True,
        refresh_interval: Optional[float] = None,
        enabled: bool = True,
    ) -> FetchOrchestrator:
        """
        Orchestrator bound to (service, method, params).

        Registers the auto-refresh subscription immediately, so it must be
        called with an event loop running.
        """
        orchestrator = self.orchestrator()
        orchestrator.bind(
            generate_key(service, method, params),
            fetch_fn,
            FetchOptions(
                ttl=self.ttl_config[cache_type],
                cache_type=cache_type,
                auto_refresh=auto_refresh,
                interval=refresh_interval,
                enabled=enabled,
            ),
        )
        return orchestrator

    async def refresh_all_data(self) -> int:
        logger.info("Manual refresh of all data")
        return await self.coordinator.refresh_all()

    async def refresh_student_data(self, student_id: str) -> int:
        return await self.coordinator.refresh_where(
            param_matcher("student", studentId=student_id),
            label=f"student:{student_id}",
        )

    async def refresh_teacher_data(self, teacher_id: str) -> int:
        return await self.coordinator.refresh_where(
            param_matcher("teacher", teacherId=teacher_id),
            label=f"teacher:{teacher_id}",
        )

    async def refresh_by_prefix(self, prefix: str) -> int:
        return await self.coordinator.refresh_by_prefix(prefix)

    async def refresh_high_priority(self) -> int:
        return await self.coordinator.refresh_high_priority()

    def invalidate(self, key_or_prefix: Optional[str] = None) -> int:
        return self.store.invalidate(key_or_prefix)

    def clear_all_cache(self) -> int:
        count = self.store.clear()
        logger.info("All caches cleared")
        return count

    def get_cache_stats(self) -> Dict[str, Any]:
        """Combined statistics of store, coalescer and coordinator."""
        return {
            "store": self.store.get_stats(),
            "coalescer": self.coalescer.get_stats(),
            "refresh": self.coordinator.get_stats(),
        }

    async def close(self) -> None:
        """Stop every timer and wait for running sweeps."""
        self.coordinator.cleanup()
        await self.coordinator.drain()


# Process-wide context for the HTTP shell
_data_context: Optional[DataContext] = None


def get_data_context() -> DataContext:
    """Get or create the process-wide data context."""
    global _data_context
    if _data_context is None:
        _data_context = DataContext()
    return _data_context


def reset_data_context() -> None:
    """Drop the process-wide context (timers must already be stopped)."""
    global _data_context
    if _data_context is not None:
        _data_context.coordinator.cleanup()
    _data_context = None
