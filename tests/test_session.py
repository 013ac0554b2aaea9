"""Tests for intentguard.session.manager: lifecycle, timers, check-ins and overrides."""

from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from intentguard.config import AppConfig
from intentguard.errors import IntentionError, PersistenceError
from intentguard.models import (
    AccessType,
    AllowedReason,
    Bundle,
    EndReason,
    IntentionApp,
    IntentionURL,
)
from intentguard.session.manager import SessionListener, SessionManager, SessionState
from intentguard.session.timer import TICK_INTERVAL
from intentguard.storage.repository import BundleRepository
from intentguard.storage.sessions import SessionStore


class RecordingListener(SessionListener):
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_started(self, intention):
        self.events.append(("started", intention.text))

    def on_warning(self, intention, remaining_seconds):
        self.events.append(("warning", remaining_seconds))

    def on_checkin_required(self, intention):
        self.events.append(("checkin", intention.text))

    def on_ended(self, intention, reason):
        self.events.append(("ended", reason))


@pytest.fixture
def listener(manager: SessionManager) -> RecordingListener:
    recorder = RecordingListener()
    manager.add_listener(recorder)
    return recorder


def _tick_for(manager: SessionManager, clock, seconds: int) -> None:
    for _ in range(seconds):
        clock.advance(1)
        manager.tick()


class TestStart:
    def test_start_persists_and_activates(self, manager: SessionManager, session_store: SessionStore, scheduler):
        intention = manager.start_intention(
            "write design doc",
            duration_seconds=1500,
            apps=[IntentionApp("com.figma.Desktop", "Figma")],
            urls=["notion.so/"],
        )

        assert manager.state is SessionState.ACTIVE
        assert intention.id > 0
        stored = session_store.get_active_intention()
        assert stored.id == intention.id
        assert stored.duration_seconds == 1500
        assert session_store.get_intention_urls(intention.id) == [IntentionURL("notion.so/")]
        assert len(scheduler.active) == 1
        assert scheduler.active[0].interval == TICK_INTERVAL

    def test_bundle_members_materialized(self, manager: SessionManager, session_store: SessionStore, deep_work: Bundle):
        intention = manager.start_intention("refactor parser", bundle_ids=[deep_work.id])

        snapshot = manager.snapshot()
        assert snapshot.bundle_ids == frozenset({deep_work.id})
        assert IntentionApp("com.apple.Terminal", "Terminal", from_bundle_id=deep_work.id) in snapshot.apps
        assert IntentionURL("github.com/*", from_bundle_id=deep_work.id) in snapshot.urls
        assert session_store.get_intention_bundle_ids(intention.id) == {deep_work.id}

    def test_adhoc_entries_lose_bundle_origin(self, manager: SessionManager, deep_work: Bundle):
        manager.start_intention("refactor parser", urls=[IntentionURL("gitlab.com/", from_bundle_id=deep_work.id)])
        assert manager.snapshot().urls == (IntentionURL("gitlab.com/"),)

    def test_records_history(self, manager: SessionManager, bundle_repo: BundleRepository):
        manager.start_intention("  write design doc ")
        items = bundle_repo.get_intention_history()
        assert [(i.text, i.times_entered, i.times_selected) for i in items] == [("write design doc", 1, 0)]

    def test_records_history_selection(self, manager: SessionManager, bundle_repo: BundleRepository):
        manager.start_intention("write design doc")
        manager.start_intention("write design doc", selected_from_history=True)
        manager.start_intention("write design doc", selected_from_history=True)
        items = bundle_repo.get_intention_history()
        assert [(i.times_entered, i.times_selected) for i in items] == [(1, 2)]

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty_text_rejected(self, manager: SessionManager, text: str):
        with pytest.raises(IntentionError):
            manager.start_intention(text)
        assert manager.state is SessionState.NO_INTENTION

    def test_non_positive_duration_rejected(self, manager: SessionManager):
        with pytest.raises(IntentionError):
            manager.start_intention("focus", duration_seconds=0)

    def test_unknown_bundle_keeps_current(self, manager: SessionManager):
        current = manager.start_intention("first")
        with pytest.raises(IntentionError):
            manager.start_intention("second", bundle_ids=[4242])
        assert manager.snapshot().intention.id == current.id

    def test_new_intention_ends_previous(
        self, manager: SessionManager, session_store: SessionStore, listener: RecordingListener, scheduler
    ):
        first = manager.start_intention("first")
        second = manager.start_intention("second")

        assert session_store.get_intention(first.id).end_reason is EndReason.NEW_INTENTION
        assert manager.snapshot().intention.id == second.id
        assert listener.events == [
            ("started", "first"),
            ("ended", EndReason.NEW_INTENTION),
            ("started", "second"),
        ]
        assert len(scheduler.active) == 1

    def test_persistence_failure_leaves_no_intention(self, manager: SessionManager, session_store: SessionStore):
        with patch.object(session_store, "create_intention", side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                manager.start_intention("write design doc")
        assert manager.state is SessionState.NO_INTENTION
        assert manager.snapshot() is None
        assert not manager.is_ticking


class TestEnd:
    def test_end_clears_state(self, manager: SessionManager, session_store: SessionStore, clock, scheduler):
        started = manager.start_intention("write design doc", urls=["notion.so/"])
        clock.advance(90)
        ended = manager.end_intention(EndReason.CHOSE_DISTRACTION)

        assert ended.id == started.id
        assert ended.ended_at == clock.now
        assert ended.end_reason is EndReason.CHOSE_DISTRACTION
        assert manager.state is SessionState.NO_INTENTION
        assert manager.snapshot() is None
        assert scheduler.active == []
        stored = session_store.get_intention(started.id)
        assert stored.ended_at == clock.now
        assert stored.end_reason is EndReason.CHOSE_DISTRACTION

    def test_end_without_intention(self, manager: SessionManager):
        assert manager.end_intention(EndReason.NEW_INTENTION) is None

    def test_choose_distraction(self, manager: SessionManager):
        manager.start_intention("write design doc")
        assert manager.choose_distraction().end_reason is EndReason.CHOSE_DISTRACTION

    def test_end_survives_storage_failure(self, manager: SessionManager, session_store: SessionStore):
        manager.start_intention("write design doc")
        with patch.object(session_store, "end_intention", side_effect=sqlite3.OperationalError("locked")):
            ended = manager.end_intention(EndReason.NEW_INTENTION)
        assert ended is not None
        assert manager.state is SessionState.NO_INTENTION

    def test_shutdown_keeps_intention(self, manager: SessionManager, session_store: SessionStore, scheduler):
        started = manager.start_intention("write design doc")
        manager.shutdown()
        assert scheduler.active == []
        assert session_store.get_active_intention().id == started.id


class TestTimer:
    def test_remaining_decreases_to_completion(
        self, manager: SessionManager, session_store: SessionStore, listener: RecordingListener, clock
    ):
        started = manager.start_intention("short task", duration_seconds=3)
        seen = []
        for _ in range(3):
            seen.append(manager.snapshot().intention.remaining_seconds(clock.now))
            clock.advance(1)
            manager.tick()

        assert seen == [3, 2, 1]
        assert manager.state is SessionState.NO_INTENTION
        assert session_store.get_intention(started.id).end_reason is EndReason.COMPLETED

        clock.advance(1)
        manager.tick()
        assert [e for e in listener.events if e[0] == "ended"] == [("ended", EndReason.COMPLETED)]

    def test_warning_fires_once(self, manager: SessionManager, listener: RecordingListener, clock):
        # default window: 5 minutes
        manager.start_intention("write design doc", duration_seconds=600)
        _tick_for(manager, clock, 302)

        warnings = [e for e in listener.events if e[0] == "warning"]
        assert warnings == [("warning", 300)]

    def test_warning_window_already_passed(self, manager: SessionManager, listener: RecordingListener, clock):
        manager.start_intention("quick fix", duration_seconds=120)
        _tick_for(manager, clock, 10)
        assert not any(e[0] == "warning" for e in listener.events)

    def test_unlimited_never_expires(self, manager: SessionManager, clock):
        manager.start_intention("open-ended research")
        clock.advance(10 * 3600)
        manager.tick()
        assert manager.state is not SessionState.NO_INTENTION
        assert manager.snapshot().intention.remaining_formatted(clock.now) == "unlimited"


class TestCheckin:
    def test_checkin_required_after_interval(self, manager: SessionManager, listener: RecordingListener, clock):
        manager.start_intention("open-ended research")

        clock.advance(1799)
        manager.tick()
        assert manager.state is SessionState.ACTIVE

        clock.advance(1)
        manager.tick()
        assert manager.state is SessionState.CHECKIN_REQUIRED
        assert listener.events[-1] == ("checkin", "open-ended research")

    def test_checkin_fires_once_until_acknowledged(self, manager: SessionManager, listener: RecordingListener, clock):
        manager.start_intention("open-ended research")
        clock.advance(1800)
        manager.tick()
        clock.advance(60)
        manager.tick()
        assert [e for e in listener.events if e[0] == "checkin"] == [("checkin", "open-ended research")]

    def test_acknowledge_resets_clock(self, manager: SessionManager, clock):
        manager.start_intention("open-ended research")
        clock.advance(1800)
        manager.tick()

        assert manager.acknowledge_checkin()
        assert manager.state is SessionState.ACTIVE
        assert manager.seconds_since_checkin() == 0

        clock.advance(1799)
        manager.tick()
        assert manager.state is SessionState.ACTIVE

    def test_acknowledge_without_intention(self, manager: SessionManager):
        assert not manager.acknowledge_checkin()

    def test_end_after_checkin(self, manager: SessionManager, session_store: SessionStore, clock):
        started = manager.start_intention("open-ended research")
        clock.advance(1800)
        manager.tick()
        manager.end_after_checkin()
        assert session_store.get_intention(started.id).end_reason is EndReason.CHECKIN_CONTINUE

    def test_timed_intention_never_needs_checkin(self, manager: SessionManager, clock):
        manager.start_intention("long block", duration_seconds=4 * 3600)
        clock.advance(3600)
        manager.tick()
        assert manager.state is SessionState.ACTIVE


class TestResume:
    def _second_manager(self, manager: SessionManager, session_store, bundle_repo, engine, clock, scheduler):
        return SessionManager(manager.app_config, session_store, bundle_repo, engine, clock=clock, scheduler=scheduler)

    def test_resume_active(self, manager, session_store, bundle_repo, engine, clock, scheduler, deep_work: Bundle):
        started = manager.start_intention("write design doc", duration_seconds=1500, bundle_ids=[deep_work.id])
        manager.shutdown()
        clock.advance(60)

        fresh = self._second_manager(manager, session_store, bundle_repo, engine, clock, scheduler)
        assert fresh.resume() is SessionState.ACTIVE
        snapshot = fresh.snapshot()
        assert snapshot.intention.id == started.id
        assert snapshot.bundle_ids == frozenset({deep_work.id})
        assert snapshot.intention.remaining_seconds(clock.now) == 1440
        assert fresh.is_ticking

    def test_resume_expired_marks_completed(self, manager, session_store, bundle_repo, engine, clock, scheduler):
        started = manager.start_intention("write design doc", duration_seconds=60)
        manager.shutdown()
        clock.advance(3600)

        fresh = self._second_manager(manager, session_store, bundle_repo, engine, clock, scheduler)
        assert fresh.resume() is SessionState.NO_INTENTION
        assert session_store.get_intention(started.id).end_reason is EndReason.COMPLETED
        assert not fresh.is_ticking

    def test_resume_expired_left_alone_when_not_finalizing(
        self, manager, session_store, bundle_repo, engine, clock, scheduler
    ):
        started = manager.start_intention("write design doc", duration_seconds=60)
        manager.shutdown()
        clock.advance(3600)

        fresh = self._second_manager(manager, session_store, bundle_repo, engine, clock, scheduler)
        assert fresh.resume(finalize_expired=False) is SessionState.NO_INTENTION
        stored = session_store.get_intention(started.id)
        assert stored.ended_at is None
        assert stored.end_reason is None

    def test_resume_nothing(self, manager: SessionManager):
        assert manager.resume() is SessionState.NO_INTENTION


class TestEnforcement:
    def test_check_records_access(self, manager: SessionManager, session_store: SessionStore, deep_work: Bundle):
        started = manager.start_intention("write design doc", bundle_ids=[deep_work.id])
        result = manager.check(AccessType.URL, "github.com/org/repo")

        assert result.reason is AllowedReason.BUNDLE
        entries = session_store.get_access_log(intention_id=started.id)
        assert len(entries) == 1
        assert entries[0].identifier == "github.com/org/repo"
        assert entries[0].allowed_reason is AllowedReason.BUNDLE

    def test_evaluate_does_not_record(self, manager: SessionManager, session_store: SessionStore):
        manager.start_intention("write design doc")
        manager.evaluate(AccessType.URL, "twitter.com/home")
        assert session_store.get_access_log() == []

    def test_check_without_intention_allows(self, manager: SessionManager, session_store: SessionStore):
        result = manager.check(AccessType.APP, "com.valvesoftware.steam")
        assert result.allowed
        assert session_store.get_access_log() == []

    def test_check_survives_log_failure(self, manager: SessionManager, session_store: SessionStore):
        manager.start_intention("write design doc")
        with patch.object(session_store, "log_access", side_effect=sqlite3.OperationalError("locked")):
            result = manager.check(AccessType.URL, "twitter.com/home")
        assert not result.allowed


class TestOverride:
    PHRASE = "I am choosing distraction"

    def test_wrong_phrase(self, manager: SessionManager, session_store: SessionStore):
        manager.start_intention("write design doc")
        assert not manager.override(AccessType.URL, "twitter.com/home", "i am choosing distraction")
        assert session_store.get_access_log() == []

    def test_override_logged(self, manager: SessionManager, session_store: SessionStore):
        manager.start_intention("write design doc")
        assert manager.override(AccessType.URL, "twitter.com/home", self.PHRASE)

        entry = session_store.get_access_log()[0]
        assert entry.was_allowed
        assert entry.was_override
        assert entry.allowed_reason is AllowedReason.OVERRIDE
        assert not entry.added_to_learned
        assert session_store.find_learned_rule(AccessType.URL, "twitter.com") is None

    def test_learned_override_applies_to_later_intention(
        self, manager: SessionManager, session_store: SessionStore
    ):
        manager.start_intention("write design doc")
        assert manager.override(AccessType.URL, "twitter.com/home", self.PHRASE, learn=True)

        rule = session_store.find_learned_rule(AccessType.URL, "twitter.com")
        assert rule.intention_pattern == "write|design"
        assert rule.allowed
        assert session_store.get_access_log()[0].added_to_learned

        manager.start_intention("write a design review")
        result = manager.evaluate(AccessType.URL, "twitter.com/anything")
        assert result.allowed
        assert result.reason is AllowedReason.LEARNED

    def test_learned_app_override(self, manager: SessionManager, session_store: SessionStore):
        manager.start_intention("write design doc")
        manager.override(AccessType.APP, "com.spotify.client", self.PHRASE, learn=True)
        assert session_store.find_learned_rule(AccessType.APP, "com.spotify.client").allowed

    def test_override_without_intention(self, manager: SessionManager, session_store: SessionStore):
        assert manager.override(AccessType.URL, "twitter.com/home", self.PHRASE, learn=True)
        assert session_store.get_access_log() == []

    def test_custom_phrase(self, session_store, bundle_repo, engine, clock, scheduler):
        manager = SessionManager(
            AppConfig(break_glass_phrase="let me through"),
            session_store,
            bundle_repo,
            engine,
            clock=clock,
            scheduler=scheduler,
        )
        manager.start_intention("write design doc")
        assert not manager.override(AccessType.URL, "twitter.com", "I am choosing distraction")
        assert manager.override(AccessType.URL, "twitter.com", "let me through")


class TestListeners:
    def test_failing_listener_does_not_break_manager(self, manager: SessionManager):
        broken = MagicMock(spec=SessionListener)
        broken.on_started.side_effect = RuntimeError("boom")
        manager.add_listener(broken)

        manager.start_intention("write design doc")
        assert manager.state is SessionState.ACTIVE
        broken.on_started.assert_called_once()
