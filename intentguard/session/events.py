"""Event channel between OS observers and the session manager.

Focus observers push ``FocusChanged`` / ``URLNavigated`` events into an
``EventLoop``; periodic ticks are posted to the same queue. One worker
thread drains the queue in order, so a tick can never interleave with a
decision that was requested before it.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Union

from intentguard.models import AccessType, FilterResult
from intentguard.session.manager import SessionManager
from intentguard.session.timer import RepeatingTimer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FocusChanged:
    app_id: str
    app_name: str = ""


@dataclass(frozen=True)
class URLNavigated:
    url: str
    title: str = ""


@dataclass(frozen=True)
class Tick:
    callback: Callable[[], None]


Event = Union[FocusChanged, URLNavigated, Tick]
DecisionHandler = Callable[[Union[FocusChanged, URLNavigated], FilterResult], None]

_STOP = object()


class EventLoop:
    """Serializes focus/navigation events and ticks on one worker thread."""

    def __init__(self, manager: SessionManager | None = None, on_decision: DecisionHandler | None = None) -> None:
        self._manager = manager
        self._on_decision = on_decision
        self._queue: queue.Queue = queue.Queue()
        self._worker: threading.Thread | None = None

    def attach(self, manager: SessionManager) -> None:
        self._manager = manager

    def post(self, event: Event) -> None:
        self._queue.put(event)

    def schedule(self, interval: float, callback: Callable[[], None]) -> RepeatingTimer:
        """Scheduler for SessionManager: ticks are queued instead of run on the timer thread."""
        return RepeatingTimer(interval, lambda: self.post(Tick(callback))).start()

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._run, name="intentguard-events", daemon=True)
        self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None

    def process_pending(self) -> int:
        """Handle every queued event on the calling thread. Returns how many ran."""
        handled = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if event is _STOP:
                return handled
            self.handle(event)
            handled += 1

    def handle(self, event: Event) -> FilterResult | None:
        if isinstance(event, Tick):
            event.callback()
            return None

        if self._manager is None:
            raise RuntimeError("EventLoop has no session manager attached")

        if isinstance(event, FocusChanged):
            result = self._manager.check(AccessType.APP, event.app_id, event.app_name)
        elif isinstance(event, URLNavigated):
            result = self._manager.check(AccessType.URL, event.url, event.title)
        else:
            raise TypeError(f"Unsupported event: {event!r}")

        if self._on_decision is not None:
            self._on_decision(event, result)
        return result

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            try:
                self.handle(event)
            except Exception:
                logger.exception(f"Failed to handle {event!r}")
