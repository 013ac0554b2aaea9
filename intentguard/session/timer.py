"""Periodic tick scheduling for the session manager."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0  # seconds


class Cancellable(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]


class RepeatingTimer:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until cancelled.

    Each run is a fresh ``threading.Timer``, so a callback that is slow
    delays the next one instead of overlapping it.
    """

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self._interval = interval
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._cancelled = False

    def start(self) -> RepeatingTimer:
        self._schedule()
        return self

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _schedule(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._timer = threading.Timer(self._interval, self._run)
            self._timer.daemon = True
            self._timer.start()

    def _run(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        except Exception:
            logger.exception("Tick callback failed")
        self._schedule()


def thread_scheduler(interval: float, callback: Callable[[], None]) -> RepeatingTimer:
    """Default scheduler: a RepeatingTimer that is already running."""
    return RepeatingTimer(interval, callback).start()
