"""Session manager: owns the active intention and its timer-driven lifecycle.

States:

    NO_INTENTION ──start──▶ ACTIVE ──tick (remaining hits 0)──▶ ended(completed)
                              │  ▲
         tick (unlimited and  │  │ acknowledge_checkin
         check-in interval    ▼  │
         has passed)       CHECKIN_REQUIRED ──end_after_checkin──▶ ended(checkin_continue)

Ending is immediate: the end is persisted, in-memory state is cleared and the
ticker is cancelled, leaving the manager in NO_INTENTION.

All reads and writes happen under one re-entrant lock, so a tick or an
evaluation never observes a half-finished start or end. The sqlite
connection is shared with the engine and is only touched under this lock.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable

from intentguard.audit import record_decision
from intentguard.config import AppConfig
from intentguard.errors import IntentionError, PersistenceError
from intentguard.models import (
    AccessType,
    AllowedReason,
    EndReason,
    FilterResult,
    Intention,
    IntentionApp,
    IntentionURL,
    SessionSnapshot,
)
from intentguard.rules.engine import RuleEngine
from intentguard.rules.matching import extract_domain, keyword_signature
from intentguard.session.timer import TICK_INTERVAL, Cancellable, Scheduler, thread_scheduler
from intentguard.storage.repository import BundleRepository
from intentguard.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NO_INTENTION = "no_intention"
    ACTIVE = "active"
    CHECKIN_REQUIRED = "checkin_required"


class SessionListener:
    """Receives lifecycle notifications. Override the hooks you need.

    Hooks run after the manager has released its lock.
    """

    def on_started(self, intention: Intention) -> None:
        pass

    def on_warning(self, intention: Intention, remaining_seconds: int) -> None:
        pass

    def on_checkin_required(self, intention: Intention) -> None:
        pass

    def on_ended(self, intention: Intention, reason: EndReason) -> None:
        pass


class SessionManager:
    """Single writer for the active intention."""

    def __init__(
        self,
        app_config: AppConfig,
        sessions: SessionStore,
        bundles: BundleRepository,
        engine: RuleEngine,
        clock: Callable[[], datetime] = datetime.now,
        scheduler: Scheduler = thread_scheduler,
    ) -> None:
        self._app_config = app_config
        self._sessions = sessions
        self._bundles = bundles
        self._engine = engine
        self._clock = clock
        self._scheduler = scheduler
        self._lock = threading.RLock()
        self._listeners: list[SessionListener] = []

        self._intention: Intention | None = None
        self._apps: tuple[IntentionApp, ...] = ()
        self._urls: tuple[IntentionURL, ...] = ()
        self._bundle_ids: frozenset[int] = frozenset()
        self._state = SessionState.NO_INTENTION
        self._last_checkin: datetime | None = None
        self._warning_sent = False
        self._ticker: Cancellable | None = None

    # -- Observation ---------------------------------------------------------

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def app_config(self) -> AppConfig:
        return self._app_config

    def now(self) -> datetime:
        return self._clock()

    def snapshot(self) -> SessionSnapshot | None:
        """A consistent, immutable view of the active intention (None if there is none)."""
        with self._lock:
            if self._intention is None:
                return None
            return SessionSnapshot(
                intention=replace(self._intention),
                apps=self._apps,
                urls=self._urls,
                bundle_ids=self._bundle_ids,
            )

    def seconds_since_checkin(self) -> int | None:
        with self._lock:
            if self._intention is None or self._last_checkin is None:
                return None
            return max(0, int((self._clock() - self._last_checkin).total_seconds()))

    @property
    def is_ticking(self) -> bool:
        with self._lock:
            return self._ticker is not None

    # -- Lifecycle -----------------------------------------------------------

    def resume(self, finalize_expired: bool = True) -> SessionState:
        """Pick up an intention left active by a previous process.

        An expired one is finalized as completed instead of resumed. With
        ``finalize_expired=False`` it is left untouched in the database and
        the manager simply stays idle.
        """
        notifications: list[Callable[[], None]] = []
        with self._lock:
            if self._intention is not None:
                return self._state
            try:
                intention = self._sessions.get_active_intention()
            except sqlite3.Error as e:
                logger.error(f"Could not look up a previously active intention: {e}")
                return self._state
            if intention is None:
                return self._state

            now = self._clock()
            if intention.is_expired(now):
                if not finalize_expired:
                    return self._state
                logger.info(f"Intention {intention.id} expired while not running; marking completed")
                self._best_effort(
                    "finalize expired intention",
                    lambda: self._sessions.end_intention(intention.id, EndReason.COMPLETED, now),
                )
                return self._state

            try:
                apps = self._sessions.get_intention_apps(intention.id)
                urls = self._sessions.get_intention_urls(intention.id)
                bundle_ids = self._sessions.get_intention_bundle_ids(intention.id)
            except sqlite3.Error as e:
                logger.error(f"Could not load attachments for intention {intention.id}: {e}")
                apps, urls, bundle_ids = [], [], set()
            if not bundle_ids:
                bundle_ids = {a.from_bundle_id for a in apps if a.from_bundle_id is not None}
                bundle_ids |= {u.from_bundle_id for u in urls if u.from_bundle_id is not None}

            self._activate(intention, apps, urls, bundle_ids, last_checkin=intention.started_at)
            logger.info(f"Resumed intention {intention.id}: {intention.text!r}")
            notifications.append(lambda: self._notify("on_started", intention))
            notifications.extend(self._tick_locked())
        self._run_notifications(notifications)
        return self.state

    def start_intention(
        self,
        text: str,
        duration_seconds: int | None = None,
        apps: Iterable[IntentionApp] = (),
        urls: Iterable[IntentionURL | str] = (),
        bundle_ids: Iterable[int] = (),
        llm_filtering_enabled: bool = True,
        selected_from_history: bool = False,
    ) -> Intention:
        """Begin a new intention, ending any current one as new_intention.

        ``urls`` may mix IntentionURL objects and plain pattern strings. Apps
        and URL patterns of every selected bundle are attached as well.
        ``selected_from_history`` counts the text as picked from the history
        list rather than typed.

        Raises IntentionError for invalid input (the current intention, if
        any, stays active). Raises PersistenceError if the new intention
        could not be saved; the current one has been ended by then, so the
        manager is left with no intention.
        """
        text = text.strip()
        if not text:
            raise IntentionError("Intention text must not be empty")
        if duration_seconds is not None and duration_seconds <= 0:
            raise IntentionError("Duration must be positive (or None for unlimited)")

        selected = frozenset(bundle_ids)
        notifications: list[Callable[[], None]] = []
        try:
            with self._lock:
                try:
                    bundles = self._bundles.get_bundles_by_ids(selected)
                except sqlite3.Error as e:
                    raise PersistenceError(f"Failed to read selected bundles: {e}") from e
                missing = selected - {b.id for b in bundles}
                if missing:
                    raise IntentionError(f"Unknown bundle id(s): {sorted(missing)}")

                all_apps = [replace(a, from_bundle_id=None) for a in apps]
                all_urls = [
                    IntentionURL(pattern=u) if isinstance(u, str) else replace(u, from_bundle_id=None)
                    for u in urls
                ]
                for bundle in bundles:
                    all_apps.extend(IntentionApp(a.app_id, a.name, from_bundle_id=bundle.id) for a in bundle.apps)
                    all_urls.extend(IntentionURL(p, from_bundle_id=bundle.id) for p in bundle.url_patterns)

                if self._intention is not None:
                    notifications.extend(self._end_locked(EndReason.NEW_INTENTION))

                now = self._clock()
                intention = Intention(
                    id=0,
                    text=text,
                    duration_seconds=duration_seconds,
                    started_at=now,
                    llm_filtering_enabled=llm_filtering_enabled,
                )
                try:
                    intention = self._sessions.create_intention(intention, all_apps, all_urls, set(selected))
                except PersistenceError:
                    logger.error(f"Could not start intention {text!r}; staying idle")
                    raise

                self._best_effort(
                    "record intention history",
                    lambda: self._record_history(text, now, selected_from_history),
                )
                self._activate(intention, all_apps, all_urls, selected, last_checkin=now)
                logger.info(
                    f"Started intention {intention.id}: {text!r} "
                    f"({'unlimited' if duration_seconds is None else f'{duration_seconds}s'}, "
                    f"{'filtering' if llm_filtering_enabled else 'strict'})"
                )
                started = replace(intention)
                notifications.append(lambda: self._notify("on_started", started))
        finally:
            self._run_notifications(notifications)
        return started

    def end_intention(self, reason: EndReason) -> Intention | None:
        """End the active intention. Returns it, or None if nothing was active."""
        with self._lock:
            intention = self._intention
            notifications = self._end_locked(reason)
        self._run_notifications(notifications)
        return replace(intention) if intention is not None else None

    def choose_distraction(self) -> Intention | None:
        return self.end_intention(EndReason.CHOSE_DISTRACTION)

    def acknowledge_checkin(self) -> bool:
        """Confirm the user is still on task; restarts the check-in clock."""
        with self._lock:
            if self._intention is None:
                return False
            self._last_checkin = self._clock()
            if self._state is SessionState.CHECKIN_REQUIRED:
                self._state = SessionState.ACTIVE
                logger.info(f"Check-in acknowledged for intention {self._intention.id}")
            return True

    def end_after_checkin(self) -> Intention | None:
        """The user answered a check-in by moving on."""
        return self.end_intention(EndReason.CHECKIN_CONTINUE)

    def tick(self) -> None:
        """Advance timers. Called once per second by the scheduler."""
        with self._lock:
            notifications = self._tick_locked()
        self._run_notifications(notifications)

    def shutdown(self) -> None:
        """Stop ticking without ending the intention, so the next process can resume it."""
        with self._lock:
            self._stop_ticker()

    # -- Enforcement ---------------------------------------------------------

    def evaluate(self, kind: AccessType, identifier: str, display_name: str = "") -> FilterResult:
        with self._lock:
            return self._engine.evaluate(kind, identifier, display_name, self.snapshot())

    def check(self, kind: AccessType, identifier: str, display_name: str = "") -> FilterResult:
        """Evaluate and record the decision in the access log."""
        with self._lock:
            snapshot = self.snapshot()
            result = self._engine.evaluate(kind, identifier, display_name, snapshot)
            record_decision(self._sessions, snapshot, kind, identifier, result)
            return result

    def override(self, kind: AccessType, identifier: str, phrase: str, learn: bool = False) -> bool:
        """Break-glass: allow a blocked app/URL if the phrase matches exactly.

        With ``learn``, the identifier (the domain, for URLs) is remembered as
        allowed for intentions with similar keywords.
        """
        if phrase != self._app_config.break_glass_phrase:
            logger.info(f"Override refused for {identifier!r}: incorrect phrase")
            return False

        with self._lock:
            snapshot = self.snapshot()
            if snapshot is None:
                return True
            record_decision(
                self._sessions,
                snapshot,
                kind,
                identifier,
                FilterResult.allow(AllowedReason.OVERRIDE),
                was_override=True,
                added_to_learned=learn,
            )
            if learn:
                learned_id = extract_domain(identifier) if kind is AccessType.URL else identifier
                pattern = keyword_signature(snapshot.intention.text)
                self._best_effort(
                    "save learned rule",
                    lambda: self._sessions.add_learned_rule(
                        pattern, kind, learned_id, allowed=True, created_at=self._clock()
                    ),
                )
            logger.info(f"Override accepted for {identifier!r} (learn={learn})")
        return True

    # -- Internals (call with the lock held) -----------------------------------

    def _activate(
        self,
        intention: Intention,
        apps: Iterable[IntentionApp],
        urls: Iterable[IntentionURL],
        bundle_ids: Iterable[int],
        last_checkin: datetime,
    ) -> None:
        self._intention = intention
        self._apps = tuple(apps)
        self._urls = tuple(urls)
        self._bundle_ids = frozenset(bundle_ids)
        self._state = SessionState.ACTIVE
        self._last_checkin = last_checkin
        self._warning_sent = False
        self._stop_ticker()
        self._ticker = self._scheduler(TICK_INTERVAL, self.tick)

    def _end_locked(self, reason: EndReason) -> list[Callable[[], None]]:
        intention = self._intention
        if intention is None:
            return []

        now = self._clock()
        self._best_effort(
            f"persist end of intention {intention.id}",
            lambda: self._sessions.end_intention(intention.id, reason, now),
        )
        intention.ended_at = now
        intention.end_reason = reason

        self._stop_ticker()
        self._intention = None
        self._apps = ()
        self._urls = ()
        self._bundle_ids = frozenset()
        self._state = SessionState.NO_INTENTION
        self._last_checkin = None
        self._warning_sent = False

        logger.info(f"Ended intention {intention.id} ({reason.value})")
        return [lambda: self._notify("on_ended", intention, reason)]

    def _tick_locked(self) -> list[Callable[[], None]]:
        intention = self._intention
        if intention is None:
            return []
        now = self._clock()

        remaining = intention.remaining_seconds(now)
        if remaining is not None:
            if remaining <= 0:
                return self._end_locked(EndReason.COMPLETED)

            window = self._app_config.warning_window_seconds
            if not self._warning_sent and window - 1 <= remaining <= window:
                self._warning_sent = True
                logger.info(f"{remaining}s remaining on intention {intention.id}")
                warned = replace(intention)
                return [lambda: self._notify("on_warning", warned, remaining)]
            return []

        if self._state is SessionState.ACTIVE and self._last_checkin is not None:
            since_checkin = (now - self._last_checkin).total_seconds()
            if since_checkin >= self._app_config.checkin_interval_seconds:
                self._state = SessionState.CHECKIN_REQUIRED
                logger.info(f"Check-in required for intention {intention.id}")
                pending = replace(intention)
                return [lambda: self._notify("on_checkin_required", pending)]
        return []

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _record_history(self, text: str, now: datetime, selected: bool) -> None:
        if selected:
            self._bundles.record_intention_selected(text, now)
        else:
            self._bundles.record_intention_entered(text, now)

    def _best_effort(self, action: str, operation: Callable[[], object]) -> None:
        try:
            operation()
        except sqlite3.Error as e:
            logger.error(f"Failed to {action}: {e}")

    def _notify(self, hook: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception:
                logger.exception(f"Session listener {hook} failed")

    @staticmethod
    def _run_notifications(notifications: list[Callable[[], None]]) -> None:
        for notify in notifications:
            notify()
