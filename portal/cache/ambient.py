"""
Process-wide ambient state (connectivity, foreground) and the signal
sources that report changes to it.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger("cache.ambient")

SignalListener = Callable[[bool], object]


@dataclass
class AmbientState:
    """Last known platform state, written only by signal handlers."""
    is_online: bool = True
    is_foreground: bool = True


class SignalSource(Protocol):
    """A platform event stream delivering a boolean state on every change."""

    def subscribe(self, on_change: SignalListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        ...


class ManualSignalSource:
    """
    Signal source fed explicitly through `push`.

    Used by the HTTP shell, where the mobile client reports connectivity and
    foreground changes, and as the test double for platform events.
    """

    def __init__(self, name: str, initial: Optional[bool] = None):
        self.name = name
        self._value = initial
        self._listeners: List[SignalListener] = []
        self._lock = threading.Lock()

    @property
    def value(self) -> Optional[bool]:
        return self._value

    def subscribe(self, on_change: SignalListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(on_change)

        def unsubscribe() -> None:
            with self._lock:
                if on_change in self._listeners:
                    self._listeners.remove(on_change)

        return unsubscribe

    def push(self, value: bool) -> None:
        """Deliver a new state to every listener."""
        with self._lock:
            self._value = bool(value)
            listeners = list(self._listeners)
        logger.debug(f"Signal {self.name} -> {value} ({len(listeners)} listeners)")
        for listener in listeners:
            listener(bool(value))
