"""
Background refresh coordination.

Keeps a registry of refresh subscriptions, re-runs them on a timer, and
sweeps them when the device reconnects or the app returns to the
foreground.
"""
import asyncio
import inspect
import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .ambient import AmbientState, SignalSource
from .store import CacheStore

logger = logging.getLogger("cache.refresh")

Trigger = Callable[[], Awaitable[Any]]


class SubscriptionState(Enum):
    REGISTERED = "registered"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass
class RefreshSubscription:
    """A named periodic refresh owned by one consumer."""
    id: int
    key: str
    trigger: Trigger
    interval: float
    state: SubscriptionState = SubscriptionState.REGISTERED
    task: Optional["asyncio.Task[None]"] = None
    run_count: int = 0
    failure_count: int = 0
    last_error: Optional[BaseException] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state is not SubscriptionState.TERMINATED


class RefreshCoordinator:
    """
    Registry of refresh subscriptions with timer and edge-triggered sweeps.

    - `register` starts an independent timer per subscription (interval > 0)
    - `refresh_all` / `refresh_by_prefix` / `refresh_high_priority`
      invalidate the store, then run the matching triggers concurrently
    - A failing trigger is logged and counted; it never stops the other
      triggers, the caller's sweep, or its own timer
    - Connectivity regained -> refresh_all; app foregrounded ->
      refresh_high_priority. Only false -> true transitions count.
    """

    def __init__(
        self,
        store: CacheStore,
        ambient: Optional[AmbientState] = None,
        high_priority_prefixes: Iterable[str] = (),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Cache store invalidated before each sweep
            ambient: Shared ambient state (a fresh one when omitted)
            high_priority_prefixes: Key prefixes swept on foreground
            sleep: Coroutine function the timers wait with between runs
        """
        self._store = store
        self._ambient = ambient or AmbientState()
        self._high_priority_prefixes = tuple(high_priority_prefixes)
        self._sleep = sleep

        self._subscriptions: Dict[int, RefreshSubscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

        self._background: Set["asyncio.Task[Any]"] = set()
        self._detach: List[Callable[[], None]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def ambient(self) -> AmbientState:
        return self._ambient

    @property
    def high_priority_prefixes(self) -> tuple:
        return self._high_priority_prefixes

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        key: str,
        trigger: Trigger,
        interval: float = 0.0,
    ) -> Callable[[], None]:
        """
        Register a refresh subscription.

        Args:
            key: Cache key the trigger refreshes
            trigger: Zero-argument coroutine function performing the refresh
            interval: Seconds between timer runs; 0 disables the timer (the
                subscription still takes part in sweeps)

        Returns:
            Function that cancels the timer and removes the subscription.
            Safe to call more than once.

        Raises:
            ValueError: If key is empty or interval is negative
            TypeError: If trigger is not callable
            RuntimeError: If interval > 0 and no event loop is running
        """
        if not key:
            raise ValueError("refresh subscription key must not be empty")
        if not callable(trigger):
            raise TypeError("refresh trigger must be callable")
        if interval is None:
            interval = 0.0
        if interval < 0:
            raise ValueError("refresh interval must not be negative")

        sub = RefreshSubscription(
            id=next(self._ids),
            key=key,
            trigger=trigger,
            interval=interval,
        )
        if sub.interval > 0:
            loop = asyncio.get_running_loop()
            self._loop = loop
            sub.task = loop.create_task(
                self._run_periodic(sub), name=f"refresh:{key}"
            )
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.debug(f"Registered refresh for {key} [interval={interval}s, id={sub.id}]")

        def unregister() -> None:
            self._remove(sub.id)

        return unregister

    def unregister(self, key: str) -> int:
        """
        Remove every subscription registered under `key`.

        Returns:
            Number of subscriptions removed
        """
        with self._lock:
            ids = [s.id for s in self._subscriptions.values() if s.key == key]
        for sub_id in ids:
            self._remove(sub_id)
        return len(ids)

    def _remove(self, sub_id: int) -> None:
        with self._lock:
            sub = self._subscriptions.pop(sub_id, None)
        if sub is None:
            return
        sub.state = SubscriptionState.TERMINATED
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()
        logger.debug(f"Unregistered refresh for {sub.key} [id={sub.id}]")

    def subscriptions(self, key: Optional[str] = None) -> List[RefreshSubscription]:
        """Snapshot of the active subscriptions, optionally for one key."""
        with self._lock:
            subs = list(self._subscriptions.values())
        if key is not None:
            subs = [s for s in subs if s.key == key]
        return subs

    # ------------------------------------------------------------------
    # Running triggers
    # ------------------------------------------------------------------

    async def _run_periodic(self, sub: RefreshSubscription) -> None:
        try:
            while sub.is_active:
                await self._sleep(sub.interval)
                if not sub.is_active:
                    break
                # Unregistering mid-run lets the trigger finish but ends the loop.
                await asyncio.shield(self._run_trigger(sub))
        except asyncio.CancelledError:
            logger.debug(f"Refresh timer cancelled for {sub.key} [id={sub.id}]")
            raise

    async def _run_trigger(self, sub: RefreshSubscription) -> bool:
        """Run one trigger; returns False if it failed."""
        if sub.state is SubscriptionState.REGISTERED:
            sub.state = SubscriptionState.RUNNING
        sub.run_count += 1
        try:
            result = sub.trigger()
            if inspect.isawaitable(result):
                await result
            return True
        except Exception as e:
            sub.failure_count += 1
            sub.last_error = e
            logger.warning(f"Refresh trigger failed for {sub.key}: {e}")
            return False
        finally:
            if sub.state is SubscriptionState.RUNNING:
                sub.state = SubscriptionState.REGISTERED

    async def _run_triggers(self, subs: List[RefreshSubscription]) -> int:
        if not subs:
            return 0
        await asyncio.gather(*(self._run_trigger(s) for s in subs))
        return len(subs)

    async def refresh_all(self) -> int:
        """
        Clear the whole store and run every registered trigger.

        Returns:
            Number of triggers run
        """
        self._store.clear()
        subs = self.subscriptions()
        logger.info(f"Refreshing all subscriptions ({len(subs)})")
        return await self._run_triggers(subs)

    async def refresh_where(
        self,
        predicate: Callable[[str], bool],
        label: Optional[str] = None,
    ) -> int:
        """
        Invalidate the entries whose key satisfies `predicate` and run the
        triggers of the matching subscriptions.

        Returns:
            Number of triggers run
        """
        self._store.invalidate_where(predicate, label=label)
        subs = [s for s in self.subscriptions() if predicate(s.key)]
        logger.info(f"Refreshing {len(subs)} subscriptions matching '{label or predicate}'")
        return await self._run_triggers(subs)

    async def refresh_by_prefix(self, prefix: str) -> int:
        """Invalidate and re-run everything under a key prefix."""
        return await self.refresh_where(lambda key: key.startswith(prefix), label=prefix)

    async def refresh_high_priority(self) -> int:
        """Invalidate and re-run every subscription under the high-priority prefixes."""
        prefixes = self._high_priority_prefixes
        if not prefixes:
            return 0
        return await self.refresh_where(
            lambda key: key.startswith(prefixes),
            label=",".join(prefixes),
        )

    # ------------------------------------------------------------------
    # Ambient edges
    # ------------------------------------------------------------------

    def attach(
        self,
        connectivity: Optional[SignalSource] = None,
        lifecycle: Optional[SignalSource] = None,
    ) -> None:
        """
        Listen to the platform's connectivity and foreground signals.

        When called with a loop running, that loop is remembered so signals
        pushed from other threads still schedule their sweeps on it.
        """
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Attached outside an event loop; sweeps need one at signal time")
        if connectivity is not None:
            self._detach.append(connectivity.subscribe(self.handle_connectivity_change))
        if lifecycle is not None:
            self._detach.append(lifecycle.subscribe(self.handle_foreground_change))

    def handle_connectivity_change(self, is_online: bool) -> Optional["asyncio.Task[int]"]:
        """
        Record a connectivity signal.

        Returns:
            The refresh_all task on an offline -> online transition handled
            on the loop's own thread, else None

        Raises:
            RuntimeError: On an offline -> online transition with no loop to
                run the sweep on; the state is left offline
        """
        return self._handle_edge(
            "is_online",
            is_online,
            self.refresh_all,
            "refresh:reconnect",
            "Network regained, refreshing all data",
        )

    def handle_foreground_change(self, is_foreground: bool) -> Optional["asyncio.Task[int]"]:
        """
        Record an app lifecycle signal.

        Returns:
            The refresh_high_priority task on a background -> foreground
            transition handled on the loop's own thread, else None

        Raises:
            RuntimeError: On a background -> foreground transition with no
                loop to run the sweep on; the state is left in background
        """
        return self._handle_edge(
            "is_foreground",
            is_foreground,
            self.refresh_high_priority,
            "refresh:foreground",
            "App foregrounded, refreshing high priority data",
        )

    def _handle_edge(
        self,
        attr: str,
        value: bool,
        sweep: Callable[[], Awaitable[int]],
        name: str,
        message: str,
    ) -> Optional["asyncio.Task[int]"]:
        value = bool(value)
        with self._lock:
            if getattr(self._ambient, attr) or not value:
                setattr(self._ambient, attr, value)
                return None
            # Nothing is committed until the sweep can be scheduled.
            loop, on_loop_thread = self._sweep_loop()
            setattr(self._ambient, attr, True)
        logger.info(message)
        if on_loop_thread:
            return self._spawn(sweep(), name)
        loop.call_soon_threadsafe(lambda: self._spawn(sweep(), name))
        return None

    def _sweep_loop(self) -> Tuple[asyncio.AbstractEventLoop, bool]:
        try:
            return asyncio.get_running_loop(), True
        except RuntimeError:
            loop = self._loop
        if loop is None or loop.is_closed():
            raise RuntimeError("no event loop available to run the refresh sweep")
        return loop, False

    def _spawn(self, coro: Awaitable[int], name: str) -> "asyncio.Task[int]":
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for every edge-triggered sweep started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Teardown / stats
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Cancel every timer, drop all subscriptions and detach from signals."""
        with self._lock:
            ids = list(self._subscriptions)
        for sub_id in ids:
            self._remove(sub_id)
        while self._detach:
            self._detach.pop()()
        logger.info(f"Refresh coordinator cleaned up ({len(ids)} subscriptions)")

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        subs = self.subscriptions()
        return {
            "subscriptions": len(subs),
            "running": sum(1 for s in subs if s.state is SubscriptionState.RUNNING),
            "timers": sum(1 for s in subs if s.task is not None and not s.task.done()),
            "failures": sum(s.failure_count for s in subs),
            "keys": sorted({s.key for s in subs}),
            "is_online": self._ambient.is_online,
            "is_foreground": self._ambient.is_foreground,
            "high_priority_prefixes": list(self._high_priority_prefixes),
        }
