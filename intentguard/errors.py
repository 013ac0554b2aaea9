"""Exception types raised across intentguard."""

from __future__ import annotations


class IntentGuardError(Exception):
    """Base class for intentguard errors."""


class PersistenceError(IntentGuardError):
    """A write that must not be skipped failed against the database."""


class IntentionError(IntentGuardError):
    """An intention could not be started with the given arguments."""


class BundleNameError(IntentGuardError):
    """A bundle name is empty or already taken."""
