"""Caller-initiated cancellation of an in-flight run."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from keelhaul.core.errors import Cancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancel flag with abort callbacks.

    Components that block on I/O register an abort callback (for example
    "terminate the in-flight ssh process") with :meth:`on_cancel`.  Calling
    :meth:`cancel` from any thread sets the flag and fires every callback
    once.  A callback registered after cancellation fires immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        logger.warning("Cancellation requested: %s", reason)
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        with self._lock:
            fire_now = self._event.is_set()
            if not fire_now:
                self._callbacks.append(callback)
        if fire_now:
            callback()

        def _unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unregister

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled by caller")

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; returns True early if cancelled."""
        return self._event.wait(timeout)
