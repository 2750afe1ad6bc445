"""
Request coalescing to prevent duplicate fetches.

When several callers ask for the same key while a fetch is running, only
one fetch is issued and every caller receives its result (or its error).
"""
import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger("cache.coalescer")

FetchFn = Callable[[], Union[Awaitable[Any], Any]]


class FetchTimeoutError(TimeoutError):
    """A fetch did not complete within the coalescer's timeout."""


@dataclass
class InFlightRequest:
    """Tracks an in-progress fetch."""
    task: "asyncio.Task[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


async def call_fetch(fetch_fn: FetchFn) -> Any:
    """Invoke a fetch function, awaiting its result if it returns an awaitable."""
    result = fetch_fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one fetch.

    Pattern:
    - First request for a key starts the fetch as a task
    - Subsequent requests for the same key await that task
    - Waiters are shielded: cancelling one caller never cancels the
      shared fetch
    - The key is released as soon as the fetch finishes

    Usage:
        coalescer = RequestCoalescer()
        groups = await coalescer.get_or_fetch(
            'teacher_getTeacherGroups_{"teacherId":"T1"}',
            lambda: teacher_service.get_teacher_groups("T1"),
        )
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a fetch may run before failing with
                FetchTimeoutError; None disables the bound
        """
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive or None")
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    async def get_or_fetch(self, cache_key: str, fetch_fn: FetchFn) -> Any:
        """
        Either join an existing in-flight fetch or start a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Zero-argument function returning the value or an
                awaitable of it

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            FetchTimeoutError: If the fetch exceeds the timeout
            Exception: Any error from fetch_fn is propagated to every caller
        """
        with self._lock:
            in_flight = self._in_flight.get(cache_key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                logger.debug(
                    f"Coalescing request for {cache_key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
            else:
                task = asyncio.ensure_future(self._run(cache_key, fetch_fn))
                task.add_done_callback(_retrieve_exception)
                in_flight = InFlightRequest(task=task)
                self._in_flight[cache_key] = in_flight
                logger.debug(f"Initiating fetch for {cache_key}")

        return await asyncio.shield(in_flight.task)

    async def _run(self, cache_key: str, fetch_fn: FetchFn) -> Any:
        try:
            if self._timeout is None:
                return await call_fetch(fetch_fn)
            try:
                return await asyncio.wait_for(call_fetch(fetch_fn), timeout=self._timeout)
            except asyncio.TimeoutError:
                raise FetchTimeoutError(
                    f"Fetch for {cache_key} timed out after {self._timeout}s"
                ) from None
        except Exception as e:
            logger.warning(f"Fetch failed for {cache_key}: {e}")
            raise
        finally:
            with self._lock:
                current = self._in_flight.get(cache_key)
                if current is not None and current.task is asyncio.current_task():
                    del self._in_flight[cache_key]

    def is_in_flight(self, cache_key: str) -> bool:
        with self._lock:
            return cache_key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "timeout_seconds": self._timeout,
            }


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Every caller may have been cancelled before the fetch failed.
    if not task.cancelled():
        task.exception()
