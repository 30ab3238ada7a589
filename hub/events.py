"""Signals emitted by the hub for collaborators (UI, HTTP event stream).

Listeners register per signal or for every signal. Callbacks run
synchronously in the emitting thread; a failing callback is logged and
does not affect the emitter or other listeners.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Signal(str, Enum):
    HEALTH_CHANGED = "health-changed"
    CATALOG_CHANGED = "catalog-changed"
    QUOTA_UPDATED = "quota-updated"
    QUOTA_THRESHOLD_CROSSED = "quota-threshold-crossed"
    SESSION_EXPIRED = "session-expired"
    EMPTY_LOCAL_CATALOG = "empty-local-catalog"
    ACTIVE_SET_CHANGED = "active-set-changed"


Listener = Callable[[Signal, Any], None]


class EventBus:
    """Observer registry for hub signals.

    Example:
        events = EventBus()
        events.subscribe(Signal.CATALOG_CHANGED, lambda sig, models: print(len(models)))
        events.emit(Signal.CATALOG_CHANGED, [])
    """

    def __init__(self):
        self._listeners: dict[Signal, list[Listener]] = {}
        self._any: list[Listener] = []
        self._lock = threading.Lock()  # Protects listener lists

    def subscribe(self, signal: Signal, callback: Listener) -> Callable[[], None]:
        """Register a callback for one signal. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.setdefault(signal, []).append(callback)
        logger.debug(f"Subscribed listener to {signal.value}")

        def unsubscribe():
            with self._lock:
                callbacks = self._listeners.get(signal, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def subscribe_all(self, callback: Listener) -> Callable[[], None]:
        """Register a callback for every signal. Returns an unsubscribe function."""
        with self._lock:
            self._any.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._any:
                    self._any.remove(callback)

        return unsubscribe

    def emit(self, signal: Signal, payload: Any = None):
        """Notify all listeners of a signal."""
        with self._lock:
            callbacks = list(self._listeners.get(signal, [])) + list(self._any)

        logger.debug(f"Emitting {signal.value} to {len(callbacks)} listener(s)")
        for cb in callbacks:
            try:
                cb(signal, payload)
            except Exception as e:
                logger.warning(f"Listener error on {signal.value}: {e}")
