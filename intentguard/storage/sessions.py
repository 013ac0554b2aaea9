"""Persistence for intentions, their attachments, the access log and learned rules."""

from __future__ import annotations

import sqlite3
from datetime import datetime

from intentguard.errors import PersistenceError
from intentguard.models import (
    AccessLogEntry,
    AccessType,
    AllowedReason,
    EndReason,
    Intention,
    IntentionApp,
    IntentionURL,
    LearnedRule,
)


class SessionStore:
    """Data access layer for intention sessions."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # -- Intentions --------------------------------------------------------

    def create_intention(
        self,
        intention: Intention,
        apps: list[IntentionApp] | None = None,
        urls: list[IntentionURL] | None = None,
        bundle_ids: set[int] | None = None,
    ) -> Intention:
        """Insert an intention and everything attached to it in one transaction.

        Raises PersistenceError (after rolling back) if any row fails, so a
        caller never holds an intention that only half exists on disk.
        """
        try:
            cursor = self._conn.execute(
                """INSERT INTO intentions
                (text, duration_seconds, started_at, ended_at, end_reason, llm_filtering_enabled)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    intention.text,
                    intention.duration_seconds,
                    intention.started_at.isoformat(),
                    intention.ended_at.isoformat() if intention.ended_at else None,
                    intention.end_reason.value if intention.end_reason else None,
                    int(intention.llm_filtering_enabled),
                ),
            )
            intention_id = cursor.lastrowid

            for app in apps or []:
                self._conn.execute(
                    """INSERT INTO intention_apps (intention_id, app_id, app_name, from_bundle_id)
                    VALUES (?, ?, ?, ?)""",
                    (intention_id, app.app_id, app.name, app.from_bundle_id),
                )
            for url in urls or []:
                self._conn.execute(
                    """INSERT INTO intention_urls (intention_id, url_pattern, from_bundle_id)
                    VALUES (?, ?, ?)""",
                    (intention_id, url.pattern, url.from_bundle_id),
                )
            for bundle_id in sorted(bundle_ids or ()):
                self._conn.execute(
                    "INSERT OR IGNORE INTO intention_bundles (intention_id, bundle_id) VALUES (?, ?)",
                    (intention_id, bundle_id),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise PersistenceError(f"Failed to save intention: {e}") from e

        if not intention_id:
            raise PersistenceError("Database did not assign an id to the intention")
        intention.id = intention_id
        return intention

    def end_intention(self, intention_id: int, reason: EndReason, ended_at: datetime) -> None:
        self._conn.execute(
            "UPDATE intentions SET ended_at = ?, end_reason = ? WHERE id = ?",
            (ended_at.isoformat(), reason.value, intention_id),
        )
        self._conn.commit()

    def delete_intention(self, intention_id: int) -> None:
        """Delete an intention. Attached apps, URLs, bundle links and access log entries cascade."""
        self._conn.execute("DELETE FROM intentions WHERE id = ?", (intention_id,))
        self._conn.commit()

    def get_intention(self, intention_id: int) -> Intention | None:
        row = self._conn.execute(
            "SELECT * FROM intentions WHERE id = ?", (intention_id,)
        ).fetchone()
        return _row_to_intention(row) if row else None

    def get_active_intention(self) -> Intention | None:
        """The most recently started intention that has not ended."""
        row = self._conn.execute(
            """SELECT * FROM intentions WHERE ended_at IS NULL
            ORDER BY started_at DESC, id DESC LIMIT 1"""
        ).fetchone()
        return _row_to_intention(row) if row else None

    def get_recent_intentions(self, limit: int = 50) -> list[Intention]:
        rows = self._conn.execute(
            "SELECT * FROM intentions ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [_row_to_intention(row) for row in rows]

    def get_intention_apps(self, intention_id: int) -> list[IntentionApp]:
        rows = self._conn.execute(
            """SELECT app_id, app_name, from_bundle_id FROM intention_apps
            WHERE intention_id = ? ORDER BY id""",
            (intention_id,),
        ).fetchall()
        return [
            IntentionApp(app_id=r["app_id"], name=r["app_name"], from_bundle_id=r["from_bundle_id"])
            for r in rows
        ]

    def get_intention_urls(self, intention_id: int) -> list[IntentionURL]:
        rows = self._conn.execute(
            """SELECT url_pattern, from_bundle_id FROM intention_urls
            WHERE intention_id = ? ORDER BY id""",
            (intention_id,),
        ).fetchall()
        return [IntentionURL(pattern=r["url_pattern"], from_bundle_id=r["from_bundle_id"]) for r in rows]

    def get_intention_bundle_ids(self, intention_id: int) -> set[int]:
        rows = self._conn.execute(
            "SELECT bundle_id FROM intention_bundles WHERE intention_id = ?", (intention_id,)
        ).fetchall()
        return {r["bundle_id"] for r in rows}

    # -- Access log ----------------------------------------------------------

    def log_access(
        self,
        intention_id: int,
        type: AccessType,
        identifier: str,
        was_allowed: bool,
        allowed_reason: AllowedReason | None = None,
        was_override: bool = False,
        added_to_learned: bool = False,
        timestamp: datetime | None = None,
    ) -> int:
        cursor = self._conn.execute(
            """INSERT INTO access_log
            (intention_id, timestamp, type, identifier, was_allowed, allowed_reason,
             was_override, added_to_learned)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                intention_id,
                (timestamp or datetime.now()).isoformat(),
                type.value,
                identifier,
                int(was_allowed),
                allowed_reason.value if was_allowed and allowed_reason else None,
                int(was_override),
                int(added_to_learned),
            ),
        )
        self._conn.commit()
        return cursor.lastrowid

    def get_access_log(self, intention_id: int | None = None, limit: int = 100) -> list[AccessLogEntry]:
        """Access log entries, newest first, optionally for a single intention."""
        query = "SELECT * FROM access_log WHERE 1=1"
        params: list = []

        if intention_id is not None:
            query += " AND intention_id = ?"
            params.append(intention_id)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = self._conn.execute(query, params).fetchall()
        return [
            AccessLogEntry(
                id=r["id"],
                intention_id=r["intention_id"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
                type=AccessType(r["type"]),
                identifier=r["identifier"],
                was_allowed=bool(r["was_allowed"]),
                allowed_reason=AllowedReason(r["allowed_reason"]) if r["allowed_reason"] else None,
                was_override=bool(r["was_override"]),
                added_to_learned=bool(r["added_to_learned"]),
            )
            for r in rows
        ]

    # -- Learned rules -------------------------------------------------------

    def add_learned_rule(
        self,
        intention_pattern: str,
        type: AccessType,
        identifier: str,
        allowed: bool,
        created_at: datetime | None = None,
    ) -> int:
        cursor = self._conn.execute(
            """INSERT INTO learned_rules (intention_pattern, type, identifier, allowed, created_at)
            VALUES (?, ?, ?, ?, ?)""",
            (
                intention_pattern,
                type.value,
                identifier,
                int(allowed),
                (created_at or datetime.now()).isoformat(),
            ),
        )
        self._conn.commit()
        return cursor.lastrowid

    def find_learned_rule(self, type: AccessType, identifier: str) -> LearnedRule | None:
        """The most recent learned rule for (type, identifier), if any."""
        row = self._conn.execute(
            """SELECT * FROM learned_rules WHERE type = ? AND identifier = ?
            ORDER BY created_at DESC, id DESC LIMIT 1""",
            (type.value, identifier),
        ).fetchone()
        if row is None:
            return None
        return LearnedRule(
            id=row["id"],
            intention_pattern=row["intention_pattern"],
            type=AccessType(row["type"]),
            identifier=row["identifier"],
            allowed=bool(row["allowed"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # -- Stats ---------------------------------------------------------------

    def get_stats(self) -> dict:
        """Summary counts across intentions, bundles, the access log and learned rules."""

        def count(sql: str) -> int:
            return self._conn.execute(sql).fetchone()[0]

        return {
            "total_intentions": count("SELECT COUNT(*) FROM intentions"),
            "active_intentions": count("SELECT COUNT(*) FROM intentions WHERE ended_at IS NULL"),
            "total_bundles": count("SELECT COUNT(*) FROM bundles"),
            "access_entries": count("SELECT COUNT(*) FROM access_log"),
            "blocked_entries": count("SELECT COUNT(*) FROM access_log WHERE was_allowed = 0"),
            "overrides": count("SELECT COUNT(*) FROM access_log WHERE was_override = 1"),
            "learned_rules": count("SELECT COUNT(*) FROM learned_rules"),
        }


def _row_to_intention(row: sqlite3.Row) -> Intention:
    return Intention(
        id=row["id"],
        text=row["text"],
        duration_seconds=row["duration_seconds"],
        started_at=datetime.fromisoformat(row["started_at"]),
        ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
        end_reason=EndReason(row["end_reason"]) if row["end_reason"] else None,
        llm_filtering_enabled=bool(row["llm_filtering_enabled"]),
    )
