"""Tests for intentguard.session.events and intentguard.session.timer."""

from __future__ import annotations

import threading
import time

import pytest

from intentguard.models import AllowedReason, Bundle
from intentguard.session.events import EventLoop, FocusChanged, Tick, URLNavigated
from intentguard.session.manager import SessionManager
from intentguard.session.timer import RepeatingTimer
from intentguard.storage.sessions import SessionStore


class TestEventLoop:
    def test_events_are_evaluated_and_recorded(
        self, manager: SessionManager, session_store: SessionStore, deep_work: Bundle
    ):
        decisions = []
        loop = EventLoop(manager, on_decision=lambda event, result: decisions.append((event, result)))
        manager.start_intention("write design doc", bundle_ids=[deep_work.id])

        loop.post(FocusChanged("com.apple.Terminal", "Terminal"))
        loop.post(URLNavigated("https://twitter.com/home", "Home / X"))
        assert loop.process_pending() == 2

        assert decisions[0][0] == FocusChanged("com.apple.Terminal", "Terminal")
        assert decisions[0][1].reason is AllowedReason.BUNDLE
        assert not decisions[1][1].allowed
        assert len(session_store.get_access_log()) == 2

    def test_ticks_run_in_order(self, manager: SessionManager):
        order = []
        loop = EventLoop(manager, on_decision=lambda event, result: order.append("decision"))
        loop.post(Tick(lambda: order.append("tick-1")))
        loop.post(FocusChanged("com.apple.finder"))
        loop.post(Tick(lambda: order.append("tick-2")))
        loop.process_pending()
        assert order == ["tick-1", "decision", "tick-2"]

    def test_handle_requires_manager(self):
        loop = EventLoop()
        with pytest.raises(RuntimeError):
            loop.handle(FocusChanged("com.apple.finder"))

    def test_attach(self, manager: SessionManager):
        loop = EventLoop()
        loop.attach(manager)
        assert loop.handle(URLNavigated("https://example.com")).allowed

    def test_worker_thread(self, manager: SessionManager):
        done = threading.Event()
        loop = EventLoop(manager, on_decision=lambda event, result: done.set())
        loop.start()
        try:
            loop.post(FocusChanged("com.apple.finder"))
            assert done.wait(timeout=5)
        finally:
            loop.stop()

    def test_worker_survives_handler_error(self, manager: SessionManager):
        done = threading.Event()
        loop = EventLoop(manager)
        loop.start()
        try:
            loop.post(Tick(lambda: 1 / 0))
            loop.post(Tick(done.set))
            assert done.wait(timeout=5)
        finally:
            loop.stop()

    def test_schedule_posts_ticks(self, manager: SessionManager):
        loop = EventLoop(manager)
        fired = threading.Event()
        timer = loop.schedule(0.01, fired.set)
        try:
            for _ in range(500):
                if loop.process_pending():
                    break
                time.sleep(0.01)
            assert fired.is_set()
        finally:
            timer.cancel()


class TestRepeatingTimer:
    def test_repeats_until_cancelled(self):
        calls = []
        enough = threading.Event()

        def callback():
            calls.append(1)
            if len(calls) >= 3:
                enough.set()

        timer = RepeatingTimer(0.01, callback).start()
        assert enough.wait(timeout=5)
        timer.cancel()
        assert timer.cancelled

    def test_survives_callback_error(self):
        calls = []
        enough = threading.Event()

        def callback():
            calls.append(1)
            if len(calls) >= 2:
                enough.set()
            raise ValueError("boom")

        timer = RepeatingTimer(0.01, callback).start()
        try:
            assert enough.wait(timeout=5)
        finally:
            timer.cancel()
