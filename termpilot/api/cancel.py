"""Cooperative cancellation shared between the queue, client and tools."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from termpilot.llm.errors import RequestCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """A one-shot cancellation flag with callbacks.

    Callbacks registered with :meth:`add_callback` run exactly once, on the
    thread that calls :meth:`cancel` (or immediately if the token is already
    cancelled).  They are used to close sockets that a reader is blocked on.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []
        for cb in callbacks:
            try:
                cb()
            except Exception as e:  # a failing closer must not block the others
                logger.debug(f"Cancel callback failed: {e}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register ``cb``; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)

                def remove() -> None:
                    with self._lock:
                        if cb in self._callbacks:
                            self._callbacks.remove(cb)

                return remove
        cb()
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(f"Request cancelled ({self.reason})")
