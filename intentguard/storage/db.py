"""SQLite database setup and schema management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA_VERSION = 2

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS intentions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    duration_seconds INTEGER,
    started_at TIMESTAMP NOT NULL,
    ended_at TIMESTAMP,
    end_reason TEXT,
    llm_filtering_enabled INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS bundles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    allow_all_apps INTEGER NOT NULL DEFAULT 0,
    allow_all_urls INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS bundle_apps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bundle_id INTEGER NOT NULL REFERENCES bundles(id) ON DELETE CASCADE,
    app_id TEXT NOT NULL,
    app_name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bundle_urls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bundle_id INTEGER NOT NULL REFERENCES bundles(id) ON DELETE CASCADE,
    url_pattern TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS intention_apps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    intention_id INTEGER NOT NULL REFERENCES intentions(id) ON DELETE CASCADE,
    app_id TEXT NOT NULL,
    app_name TEXT NOT NULL,
    from_bundle_id INTEGER REFERENCES bundles(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS intention_urls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    intention_id INTEGER NOT NULL REFERENCES intentions(id) ON DELETE CASCADE,
    url_pattern TEXT NOT NULL,
    from_bundle_id INTEGER REFERENCES bundles(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS intention_bundles (
    intention_id INTEGER NOT NULL REFERENCES intentions(id) ON DELETE CASCADE,
    bundle_id INTEGER NOT NULL REFERENCES bundles(id) ON DELETE CASCADE,
    PRIMARY KEY (intention_id, bundle_id)
);

CREATE TABLE IF NOT EXISTS access_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    intention_id INTEGER REFERENCES intentions(id) ON DELETE CASCADE,
    timestamp TIMESTAMP NOT NULL,
    type TEXT NOT NULL,
    identifier TEXT NOT NULL,
    was_allowed INTEGER NOT NULL,
    allowed_reason TEXT,
    was_override INTEGER NOT NULL DEFAULT 0,
    added_to_learned INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS learned_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    intention_pattern TEXT NOT NULL,
    type TEXT NOT NULL,
    identifier TEXT NOT NULL,
    allowed INTEGER NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS intention_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL UNIQUE,
    times_entered INTEGER NOT NULL DEFAULT 1,
    times_selected INTEGER NOT NULL DEFAULT 0,
    first_entered_at TIMESTAMP NOT NULL,
    last_used_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_intentions_started_at ON intentions(started_at);
CREATE INDEX IF NOT EXISTS idx_access_log_intention ON access_log(intention_id);
CREATE INDEX IF NOT EXISTS idx_learned_rules_lookup ON learned_rules(type, identifier);
CREATE INDEX IF NOT EXISTS idx_intention_history_last_used ON intention_history(last_used_at DESC);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create or open a SQLite database with the intentguard schema.

    The connection may be shared across threads; callers serialize access
    (the session manager holds one lock around every read and write).
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if 0 < version < 2:
        _rebuild_access_log(conn)
    else:
        conn.executescript(SCHEMA_SQL)
    conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
    conn.commit()

    return conn


def _rebuild_access_log(conn: sqlite3.Connection) -> None:
    """Version 1 databases lack ON DELETE CASCADE on access_log.intention_id."""
    conn.executescript(
        "DROP INDEX IF EXISTS idx_access_log_intention;"
        "ALTER TABLE access_log RENAME TO access_log_v1;"
        + SCHEMA_SQL
        + """INSERT INTO access_log
        (id, intention_id, timestamp, type, identifier, was_allowed,
         allowed_reason, was_override, added_to_learned)
        SELECT id, intention_id, timestamp, type, identifier, was_allowed,
               allowed_reason, was_override, added_to_learned
        FROM access_log_v1;
        DROP TABLE access_log_v1;"""
    )
