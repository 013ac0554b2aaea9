"""CRUD operations for bundles and intention history."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from intentguard.errors import BundleNameError, PersistenceError
from intentguard.models import Bundle, BundleApp, IntentionHistoryItem

logger = logging.getLogger(__name__)

ADMIN_BUNDLE_NAME = "Admin"


class BundleRepository:
    """Data access layer for bundles and the intention-history table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # -- Bundles ----------------------------------------------------------

    def create_bundle(self, bundle: Bundle) -> Bundle:
        """Insert a bundle with its apps and URL patterns. Returns it with its new id."""
        name = bundle.name.strip()
        if not name:
            raise BundleNameError("Bundle name must not be empty")
        if self.get_bundle_by_name(name) is not None:
            raise BundleNameError(f"A bundle named {name!r} already exists")

        try:
            cursor = self._conn.execute(
                """INSERT INTO bundles (name, allow_all_apps, allow_all_urls, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    name,
                    int(bundle.allow_all_apps),
                    int(bundle.allow_all_urls),
                    bundle.created_at.isoformat(),
                    bundle.updated_at.isoformat(),
                ),
            )
            bundle_id = cursor.lastrowid
            self._insert_members(bundle_id, bundle.apps, bundle.url_patterns)
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise BundleNameError(f"A bundle named {name!r} already exists") from e
        except sqlite3.Error as e:
            self._conn.rollback()
            raise PersistenceError(f"Failed to create bundle {name!r}: {e}") from e

        bundle.id = bundle_id
        bundle.name = name
        return bundle

    def update_bundle(self, bundle: Bundle) -> Bundle:
        """Replace a bundle's name, flags and members. Bumps updated_at."""
        name = bundle.name.strip()
        if not name:
            raise BundleNameError("Bundle name must not be empty")
        existing = self.get_bundle_by_name(name)
        if existing is not None and existing.id != bundle.id:
            raise BundleNameError(f"A bundle named {name!r} already exists")

        bundle.updated_at = datetime.now()
        try:
            self._conn.execute(
                """UPDATE bundles SET name = ?, allow_all_apps = ?, allow_all_urls = ?, updated_at = ?
                WHERE id = ?""",
                (
                    name,
                    int(bundle.allow_all_apps),
                    int(bundle.allow_all_urls),
                    bundle.updated_at.isoformat(),
                    bundle.id,
                ),
            )
            # Members are replaced wholesale
            self._conn.execute("DELETE FROM bundle_apps WHERE bundle_id = ?", (bundle.id,))
            self._conn.execute("DELETE FROM bundle_urls WHERE bundle_id = ?", (bundle.id,))
            self._insert_members(bundle.id, bundle.apps, bundle.url_patterns)
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise PersistenceError(f"Failed to update bundle {name!r}: {e}") from e

        bundle.name = name
        return bundle

    def delete_bundle(self, bundle_id: int) -> None:
        """Delete a bundle. Its apps and URL patterns cascade."""
        self._conn.execute("DELETE FROM bundles WHERE id = ?", (bundle_id,))
        self._conn.commit()

    def get_all_bundles(self) -> list[Bundle]:
        rows = self._conn.execute("SELECT * FROM bundles ORDER BY name").fetchall()
        return [self._row_to_bundle(row) for row in rows]

    def get_bundle(self, bundle_id: int) -> Bundle | None:
        row = self._conn.execute("SELECT * FROM bundles WHERE id = ?", (bundle_id,)).fetchone()
        return self._row_to_bundle(row) if row else None

    def get_bundle_by_name(self, name: str) -> Bundle | None:
        row = self._conn.execute("SELECT * FROM bundles WHERE name = ?", (name,)).fetchone()
        return self._row_to_bundle(row) if row else None

    def get_bundles_by_ids(self, bundle_ids: set[int] | frozenset[int]) -> list[Bundle]:
        if not bundle_ids:
            return []
        placeholders = ", ".join("?" for _ in bundle_ids)
        rows = self._conn.execute(
            f"SELECT * FROM bundles WHERE id IN ({placeholders}) ORDER BY name",
            tuple(bundle_ids),
        ).fetchall()
        return [self._row_to_bundle(row) for row in rows]

    def ensure_admin_bundle(self) -> Bundle:
        """Create the built-in Admin bundle (allows every app and URL) once."""
        existing = self.get_bundle_by_name(ADMIN_BUNDLE_NAME)
        if existing is not None:
            return existing
        admin = self.create_bundle(
            Bundle(id=0, name=ADMIN_BUNDLE_NAME, allow_all_apps=True, allow_all_urls=True)
        )
        logger.info("Created default Admin bundle (allows all apps and URLs)")
        return admin

    def _insert_members(self, bundle_id: int, apps: list[BundleApp], url_patterns: list[str]) -> None:
        for app in apps:
            self._conn.execute(
                "INSERT INTO bundle_apps (bundle_id, app_id, app_name) VALUES (?, ?, ?)",
                (bundle_id, app.app_id, app.name),
            )
        for pattern in url_patterns:
            self._conn.execute(
                "INSERT INTO bundle_urls (bundle_id, url_pattern) VALUES (?, ?)",
                (bundle_id, pattern),
            )

    def _row_to_bundle(self, row: sqlite3.Row) -> Bundle:
        """Convert a bundles row to a Bundle with its members."""
        app_rows = self._conn.execute(
            "SELECT app_id, app_name FROM bundle_apps WHERE bundle_id = ? ORDER BY id",
            (row["id"],),
        ).fetchall()
        url_rows = self._conn.execute(
            "SELECT url_pattern FROM bundle_urls WHERE bundle_id = ? ORDER BY id",
            (row["id"],),
        ).fetchall()
        return Bundle(
            id=row["id"],
            name=row["name"],
            apps=[BundleApp(app_id=r["app_id"], name=r["app_name"]) for r in app_rows],
            url_patterns=[r["url_pattern"] for r in url_rows],
            allow_all_apps=bool(row["allow_all_apps"]),
            allow_all_urls=bool(row["allow_all_urls"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # -- Intention history -------------------------------------------------

    def record_intention_entered(self, text: str, now: datetime | None = None) -> None:
        """Count one more entry of this intention text (inserting it on first use)."""
        text = text.strip()
        if not text:
            return
        stamp = (now or datetime.now()).isoformat()

        cursor = self._conn.execute(
            """UPDATE intention_history
            SET times_entered = times_entered + 1, last_used_at = ?
            WHERE text = ?""",
            (stamp, text),
        )
        if cursor.rowcount == 0:
            self._conn.execute(
                """INSERT INTO intention_history
                (text, times_entered, times_selected, first_entered_at, last_used_at)
                VALUES (?, 1, 0, ?, ?)""",
                (text, stamp, stamp),
            )
        self._conn.commit()

    def record_intention_selected(self, text: str, now: datetime | None = None) -> None:
        """Count one more selection of an already-entered intention text."""
        text = text.strip()
        if not text:
            return
        self._conn.execute(
            """UPDATE intention_history
            SET times_selected = times_selected + 1, last_used_at = ?
            WHERE text = ?""",
            ((now or datetime.now()).isoformat(), text),
        )
        self._conn.commit()

    def get_intention_history(self, limit: int = 100) -> list[IntentionHistoryItem]:
        """Most recently used intention texts first."""
        rows = self._conn.execute(
            """SELECT * FROM intention_history
            ORDER BY last_used_at DESC, id DESC
            LIMIT ?""",
            (limit,),
        ).fetchall()
        return [
            IntentionHistoryItem(
                id=row["id"],
                text=row["text"],
                times_entered=row["times_entered"],
                times_selected=row["times_selected"],
                first_entered_at=datetime.fromisoformat(row["first_entered_at"]),
                last_used_at=datetime.fromisoformat(row["last_used_at"]),
            )
            for row in rows
        ]
