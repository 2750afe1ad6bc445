"""
Unit tests for the fetch orchestrator: cache reads, single-flight fetches,
failure handling and lifecycle.
"""
import asyncio

import pytest
import pytest_asyncio

from portal.cache import (
    CacheStore,
    CacheType,
    FetchOrchestrator,
    RefreshCoordinator,
    RequestCoalescer,
    generate_key,
)

GROUPS_KEY = generate_key("teacher", "getTeacherGroups", {"teacherId": "T1"})


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualTimer:
    """Replacement for asyncio.sleep: refresh timers wake only on `advance`."""

    def __init__(self):
        self._sleepers = []

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append(future)
        await future

    async def advance(self, ticks: int = 1) -> None:
        for _ in range(ticks):
            await settle()
            sleepers, self._sleepers = self._sleepers, []
            for future in sleepers:
                if not future.done():
                    future.set_result(None)
            await settle()


class FakeFetch:
    """Async fetch returning `result` after `delay`, counting calls."""

    def __init__(self, result=None, delay: float = 0.0):
        self.calls = 0
        self.result = result
        self.delay = delay
        self.error = None

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return CacheStore(default_ttl=300, clock=clock)


@pytest.fixture
def timer():
    return ManualTimer()


@pytest_asyncio.fixture
async def coordinator(store, timer):
    coordinator = RefreshCoordinator(store, sleep=timer.sleep)
    yield coordinator
    coordinator.cleanup()


@pytest.fixture
def coalescer():
    return RequestCoalescer(timeout=5)


@pytest_asyncio.fixture
async def make_orchestrator(store, coordinator, coalescer):
    created = []

    def factory() -> FetchOrchestrator:
        orchestrator = FetchOrchestrator(store, coordinator, coalescer)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.dispose()


# =============================================================================
# Reads and fetches
# =============================================================================

@pytest.mark.asyncio
async def test_first_request_loads_then_invalidate_forces_new_fetch(make_orchestrator, coordinator):
    orchestrator = make_orchestrator()
    fetch = FakeFetch(result=["G1", "G2"])
    states = []
    orchestrator.subscribe(states.append)

    result = await orchestrator.request(GROUPS_KEY, fetch, interval=300)

    assert states[0].is_loading is True
    assert result.value == ["G1", "G2"]
    assert result.is_loading is False
    assert result.last_updated is not None
    assert len(coordinator.subscriptions(GROUPS_KEY)) == 1

    orchestrator.invalidate()
    refetch = FakeFetch(result=["G1", "G2", "G3"])
    result = await orchestrator.request(GROUPS_KEY, refetch)

    assert refetch.calls == 1
    assert result.value == ["G1", "G2", "G3"]
    assert len(coordinator.subscriptions(GROUPS_KEY)) == 1


@pytest.mark.asyncio
async def test_invalidate_removes_only_its_own_key(make_orchestrator, store):
    orchestrator = make_orchestrator()
    orchestrator.bind("users", FakeFetch(result=["u1"]))
    store.put("users_admin", ["a1"])

    # Own key absent: nothing else may go with it.
    assert orchestrator.invalidate() == 0
    assert "users_admin" in store

    await orchestrator.request()
    assert orchestrator.invalidate() == 1
    assert store.keys() == ["users_admin"]


@pytest.mark.asyncio
async def test_fresh_cache_hit_skips_fetch(make_orchestrator, store):
    store.put(GROUPS_KEY, ["cached"], ttl=60)
    fetch = FakeFetch(result=["network"])

    result = await make_orchestrator().request(GROUPS_KEY, fetch, auto_refresh=False)

    assert fetch.calls == 0
    assert result.value == ["cached"]
    assert result.is_loading is False
    assert result.last_updated == store.get_entry(GROUPS_KEY).updated_at


@pytest.mark.asyncio
async def test_stale_value_is_shown_while_refreshing(make_orchestrator, store, clock):
    store.put(GROUPS_KEY, ["old"], ttl=10)
    clock.advance(11)
    orchestrator = make_orchestrator()
    states = []
    orchestrator.subscribe(states.append)

    result = await orchestrator.request(GROUPS_KEY, FakeFetch(result=["new"]), auto_refresh=False)

    refreshing = [s for s in states if s.is_refreshing]
    assert refreshing and refreshing[0].value == ["old"]
    assert not any(s.is_loading for s in states)
    assert result.value == ["new"]
    assert store.get(GROUPS_KEY) == (["new"], True, True)


@pytest.mark.asyncio
async def test_no_cache_type_fetches_every_time(make_orchestrator):
    fetch = FakeFetch(result="v")
    orchestrator = make_orchestrator()

    await orchestrator.request(GROUPS_KEY, fetch, cache_type=CacheType.NO_CACHE, auto_refresh=False)
    await orchestrator.request()

    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_force_refresh_bypasses_fresh_cache(make_orchestrator, store):
    fetch = FakeFetch(result="v1")
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, auto_refresh=False)
    fetch.result = "v2"

    result = await orchestrator.force_refresh()

    assert fetch.calls == 2
    assert result.value == "v2"
    assert result.is_refreshing is False
    assert store.get(GROUPS_KEY).value == "v2"


@pytest.mark.asyncio
async def test_request_with_force_refresh_option(make_orchestrator):
    fetch = FakeFetch(result="v")
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, auto_refresh=False)

    await orchestrator.request(force_refresh=True)

    assert fetch.calls == 2


# =============================================================================
# Failures
# =============================================================================

@pytest.mark.asyncio
async def test_failed_refresh_preserves_value_and_cache_entry(make_orchestrator, store):
    fetch = FakeFetch(result="v1")
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, auto_refresh=False)
    entry = store.get_entry(GROUPS_KEY)
    last_updated = orchestrator.state.last_updated

    fetch.error = ConnectionError("offline")
    result = await orchestrator.force_refresh()

    assert result.value == "v1"
    assert isinstance(result.error, ConnectionError)
    assert result.error_message == "offline"
    assert result.last_updated == last_updated
    assert store.get_entry(GROUPS_KEY) is entry
    assert store.get(GROUPS_KEY) == ("v1", True, True)


@pytest.mark.asyncio
async def test_first_fetch_failure_reports_error_without_value(make_orchestrator):
    fetch = FakeFetch()
    fetch.error = RuntimeError("")

    result = await make_orchestrator().request(GROUPS_KEY, fetch, auto_refresh=False)

    assert result.value is None
    assert result.has_value is False
    assert result.is_loading is False
    assert result.error_message == "Failed to load data"


@pytest.mark.asyncio
async def test_next_success_clears_error(make_orchestrator):
    fetch = FakeFetch(result="v")
    fetch.error = RuntimeError("boom")
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, auto_refresh=False)

    fetch.error = None
    result = await orchestrator.request()

    assert result.error is None
    assert result.value == "v"


@pytest.mark.asyncio
async def test_reset_error(make_orchestrator):
    fetch = FakeFetch()
    fetch.error = RuntimeError("boom")
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, auto_refresh=False)

    assert orchestrator.reset_error().error is None


@pytest.mark.asyncio
async def test_timeout_is_reported_as_error(store, coordinator):
    orchestrator = FetchOrchestrator(store, coordinator, RequestCoalescer(timeout=0.05))

    result = await orchestrator.request(GROUPS_KEY, FakeFetch(result="late", delay=1), auto_refresh=False)

    assert isinstance(result.error, TimeoutError)
    assert GROUPS_KEY not in store
    orchestrator.dispose()


# =============================================================================
# Single-flight
# =============================================================================

@pytest.mark.asyncio
async def test_mount_manual_and_scheduled_refresh_share_one_fetch(make_orchestrator, coordinator):
    fetch = FakeFetch(result=["G1", "G2"], delay=0.1)
    orchestrator = make_orchestrator()
    orchestrator.bind(GROUPS_KEY, fetch)

    requested, forced, triggered = await asyncio.gather(
        orchestrator.request(),
        orchestrator.force_refresh(),
        coordinator.refresh_by_prefix(GROUPS_KEY),
    )

    assert fetch.calls == 1
    assert triggered == 1
    assert requested.value == forced.value == orchestrator.state.value == ["G1", "G2"]


@pytest.mark.asyncio
async def test_consumers_of_the_same_key_share_one_fetch(make_orchestrator):
    fetch = FakeFetch(result="v", delay=0.05)
    first, second = make_orchestrator(), make_orchestrator()

    results = await asyncio.gather(
        first.request(GROUPS_KEY, fetch, auto_refresh=False),
        second.request(GROUPS_KEY, fetch, auto_refresh=False),
    )

    assert fetch.calls == 1
    assert [r.value for r in results] == ["v", "v"]


# =============================================================================
# Optimistic updates
# =============================================================================

@pytest.mark.asyncio
async def test_set_optimistic_updates_store_and_state_without_fetch(make_orchestrator, store):
    fetch = FakeFetch(result=["G1"])
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, auto_refresh=False)

    result = orchestrator.set_optimistic(["G1", "G-new"])

    assert fetch.calls == 1
    assert result.value == ["G1", "G-new"]
    assert store.get(GROUPS_KEY) == (["G1", "G-new"], True, True)

    await orchestrator.force_refresh()
    assert orchestrator.state.value == ["G1"]


# =============================================================================
# Lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_auto_refresh_timer_updates_value(make_orchestrator, timer):
    fetch = FakeFetch(result=1)
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, interval=30)

    fetch.result = 2
    await timer.advance()

    assert fetch.calls == 2
    assert orchestrator.state.value == 2


@pytest.mark.asyncio
async def test_dispose_unregisters_and_is_idempotent(make_orchestrator, coordinator, timer):
    fetch = FakeFetch(result=1)
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, fetch, interval=30)

    orchestrator.dispose()
    orchestrator.dispose()
    await timer.advance(2)

    assert fetch.calls == 1
    assert coordinator.subscriptions() == []
    with pytest.raises(RuntimeError):
        await orchestrator.request()


@pytest.mark.asyncio
async def test_async_context_manager_disposes(store, coordinator, coalescer):
    async with FetchOrchestrator(store, coordinator, coalescer) as orchestrator:
        await orchestrator.request(GROUPS_KEY, FakeFetch(result=1))
        assert len(coordinator.subscriptions()) == 1

    assert orchestrator.disposed
    assert coordinator.subscriptions() == []


@pytest.mark.asyncio
async def test_disabled_orchestrator_neither_fetches_nor_registers(make_orchestrator, coordinator):
    fetch = FakeFetch(result=1)

    result = await make_orchestrator().request(GROUPS_KEY, fetch, enabled=False)

    assert fetch.calls == 0
    assert result.value is None
    assert coordinator.subscriptions() == []


@pytest.mark.asyncio
async def test_rebinding_to_another_key_moves_subscription(make_orchestrator, coordinator):
    other_key = generate_key("teacher", "getTeacherGroups", {"teacherId": "T2"})
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, FakeFetch(result="T1"))

    result = await orchestrator.request(other_key, FakeFetch(result="T2"))

    assert result.key == other_key
    assert result.value == "T2"
    assert coordinator.subscriptions(GROUPS_KEY) == []
    assert len(coordinator.subscriptions(other_key)) == 1


@pytest.mark.asyncio
async def test_changing_interval_reregisters_single_subscription(make_orchestrator, coordinator):
    orchestrator = make_orchestrator()
    await orchestrator.request(GROUPS_KEY, FakeFetch(result=1), interval=300)

    await orchestrator.request(interval=600)

    (sub,) = coordinator.subscriptions(GROUPS_KEY)
    assert sub.interval == 600


@pytest.mark.asyncio
async def test_binding_requires_key_and_callable(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(ValueError):
        orchestrator.bind("", FakeFetch())
    with pytest.raises(TypeError):
        orchestrator.bind(GROUPS_KEY, None)


@pytest.mark.asyncio
async def test_unbound_operations_fail_fast(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(RuntimeError):
        await orchestrator.force_refresh()
    with pytest.raises(RuntimeError):
        orchestrator.invalidate()
