"""Access-log recording for rule engine decisions.

Every decision handed back to a collaborator (the browser companion, the
focus observer) is appended to the access_log table so the user can review
what was allowed, what was blocked, and where they chose to override.

Recording is best-effort: enforcement happens in memory, so a storage
failure here is logged and otherwise ignored.
"""

from __future__ import annotations

import logging
import sqlite3

from intentguard.models import AccessType, FilterResult, SessionSnapshot
from intentguard.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


def record_decision(
    store: SessionStore,
    snapshot: SessionSnapshot | None,
    kind: AccessType,
    identifier: str,
    result: FilterResult,
    was_override: bool = False,
    added_to_learned: bool = False,
) -> int | None:
    """Append an access-log entry for a decision. Never raises.

    Returns the new entry id, or None when nothing was written (no active
    intention, or the write failed).
    """
    if snapshot is None:
        return None
    try:
        return store.log_access(
            intention_id=snapshot.intention.id,
            type=kind,
            identifier=identifier,
            was_allowed=result.allowed,
            allowed_reason=result.reason,
            was_override=was_override,
            added_to_learned=added_to_learned,
        )
    except sqlite3.Error as e:
        logger.error(f"Failed to record access for {identifier!r}: {e}")
        return None
