"""Wires config, storage, rule engine and session manager together at startup."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from intentguard.config import Config, ConfigStore
from intentguard.rules.engine import Classifier, RuleEngine
from intentguard.session.manager import SessionManager
from intentguard.session.timer import Scheduler, thread_scheduler
from intentguard.storage.db import get_connection
from intentguard.storage.repository import BundleRepository
from intentguard.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    config_store: ConfigStore
    conn: sqlite3.Connection
    bundles: BundleRepository
    sessions: SessionStore
    engine: RuleEngine
    manager: SessionManager

    def close(self) -> None:
        self.manager.shutdown()
        self.conn.close()


def build_services(
    config: Config,
    classifier: Classifier | None = None,
    clock: Callable[[], datetime] = datetime.now,
    scheduler: Scheduler = thread_scheduler,
    resume: bool = True,
) -> Services:
    """Construct every service once, in dependency order.

    Loads the YAML documents, opens the database, creates the Admin bundle and
    any config-declared bundles that are missing, then (optionally) resumes an
    intention left active by a previous run.
    """
    config_store = ConfigStore.from_config(config).load()

    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(config.db_path)
    bundles = BundleRepository(conn)
    sessions = SessionStore(conn)

    bundles.ensure_admin_bundle()
    config_store.sync_bundles(bundles)

    engine = RuleEngine(config_store.rules, bundles, sessions, classifier=classifier)
    manager = SessionManager(
        config_store.app, sessions, bundles, engine, clock=clock, scheduler=scheduler
    )
    if resume:
        manager.resume()

    logger.debug(f"Services ready (db={config.db_path}, config={config.config_dir})")
    return Services(
        config=config,
        config_store=config_store,
        conn=conn,
        bundles=bundles,
        sessions=sessions,
        engine=engine,
        manager=manager,
    )
