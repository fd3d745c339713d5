"""
In-process signals — callback lists with error isolation.

Used for key availability, session transitions and the sync status
shown to the UI. A failing subscriber is logged and skipped; it never
breaks the publisher or the other subscribers.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger("risu.events")

T = TypeVar("T")


class Signal(Generic[T]):
    """A named, thread-safe list of callbacks.

    Args:
        name: Used in log lines only.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[T], Any]] = []

    def subscribe(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        """Register ``callback``. Returns a function that unsubscribes it."""
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, value: T) -> int:
        """Call every subscriber with ``value``.

        Returns:
            Number of callbacks that completed without raising.
        """
        with self._lock:
            callbacks = list(self._callbacks)

        delivered = 0
        for cb in callbacks:
            try:
                cb(value)
                delivered += 1
            except Exception as exc:
                logger.error("Callback error on '%s': %s", self.name, exc, exc_info=True)
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)
