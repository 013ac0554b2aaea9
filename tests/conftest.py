"""Shared test fixtures for intentguard."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from intentguard.config import AllowBlockList, AppConfig, IntentionRule, RulesConfig
from intentguard.models import Bundle, BundleApp
from intentguard.rules.engine import RuleEngine
from intentguard.session.manager import SessionManager
from intentguard.storage.db import get_connection
from intentguard.storage.repository import BundleRepository
from intentguard.storage.sessions import SessionStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ManualHandle:
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler that records tickers instead of starting threads."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def __call__(self, interval: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(interval, callback)
        self.handles.append(handle)
        return handle

    @property
    def active(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def db_conn(db_path: Path) -> sqlite3.Connection:
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def bundle_repo(db_conn: sqlite3.Connection) -> BundleRepository:
    return BundleRepository(db_conn)


@pytest.fixture
def session_store(db_conn: sqlite3.Connection) -> SessionStore:
    return SessionStore(db_conn)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 15, 9, 0, 0))


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def rules_config() -> RulesConfig:
    return RulesConfig(
        always_allowed=AllowBlockList(
            apps=["com.apple.finder"],
            urls=["google.com/search"],
        ),
        always_blocked=AllowBlockList(
            apps=["com.valvesoftware.steam"],
            urls=["reddit.com/"],
        ),
        intention_rules=[
            IntentionRule(
                pattern="code|programming|debug",
                allow_apps=["com.microsoft.VSCode"],
                allow_urls=["stackoverflow.com/"],
            )
        ],
    )


@pytest.fixture
def engine(rules_config: RulesConfig, bundle_repo: BundleRepository, session_store: SessionStore) -> RuleEngine:
    return RuleEngine(rules_config, bundle_repo, session_store)


@pytest.fixture
def manager(
    app_config: AppConfig,
    session_store: SessionStore,
    bundle_repo: BundleRepository,
    engine: RuleEngine,
    clock: FakeClock,
    scheduler: ManualScheduler,
) -> SessionManager:
    return SessionManager(app_config, session_store, bundle_repo, engine, clock=clock, scheduler=scheduler)


@pytest.fixture
def deep_work(bundle_repo: BundleRepository) -> Bundle:
    return bundle_repo.create_bundle(
        Bundle(
            id=0,
            name="Deep Work",
            apps=[BundleApp(app_id="com.apple.Terminal", name="Terminal")],
            url_patterns=["github.com/*"],
        )
    )


@pytest.fixture
def admin_bundle(bundle_repo: BundleRepository) -> Bundle:
    return bundle_repo.ensure_admin_bundle()
