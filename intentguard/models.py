"""Core data models for intentguard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccessType(str, Enum):
    APP = "app"
    URL = "url"


class AllowedReason(str, Enum):
    EXPLICIT = "explicit"  # Attached ad-hoc to the intention
    BUNDLE = "bundle"  # From a bundle selected for the intention
    CONFIG = "config"  # From a keyword-triggered rule in rules.yaml
    LEARNED = "learned"
    CLASSIFIER = "llm"
    OVERRIDE = "override"  # User typed the break-glass phrase
    ALWAYS_ALLOWED = "always_allowed"


class EndReason(str, Enum):
    COMPLETED = "completed"
    NEW_INTENTION = "new_intention"
    CHOSE_DISTRACTION = "chose_distraction"
    CHECKIN_CONTINUE = "checkin_continue"


@dataclass(frozen=True)
class FilterResult:
    allowed: bool
    reason: AllowedReason | None = None  # None when blocked
    message: str | None = None

    @classmethod
    def allow(cls, reason: AllowedReason, message: str | None = None) -> FilterResult:
        return cls(allowed=True, reason=reason, message=message)

    @classmethod
    def block(cls, message: str | None = None) -> FilterResult:
        return cls(allowed=False, reason=None, message=message)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else "blocked",
            "message": self.message or "",
        }


@dataclass
class Intention:
    id: int  # 0 until persisted
    text: str
    duration_seconds: int | None  # None = unlimited, with periodic check-ins
    started_at: datetime
    ended_at: datetime | None = None
    end_reason: EndReason | None = None
    llm_filtering_enabled: bool = True  # False = strict mode

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def is_unlimited(self) -> bool:
        return self.duration_seconds is None

    def elapsed_seconds(self, now: datetime) -> int:
        return max(0, int((now - self.started_at).total_seconds()))

    def remaining_seconds(self, now: datetime) -> int | None:
        if self.duration_seconds is None:
            return None
        return max(0, self.duration_seconds - self.elapsed_seconds(now))

    def is_expired(self, now: datetime) -> bool:
        remaining = self.remaining_seconds(now)
        return remaining is not None and remaining <= 0

    def remaining_formatted(self, now: datetime) -> str:
        remaining = self.remaining_seconds(now)
        if remaining is None:
            return "unlimited"
        minutes = remaining // 60
        if minutes < 1:
            return "<1m"
        return f"{minutes}m"

    def elapsed_formatted(self, now: datetime) -> str:
        elapsed = self.elapsed_seconds(now)
        hours, minutes = elapsed // 3600, (elapsed % 3600) // 60
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"


@dataclass(frozen=True)
class BundleApp:
    """An application identified by a stable id (e.g. "com.microsoft.VSCode")."""

    app_id: str
    name: str = field(compare=False)


@dataclass
class Bundle:
    id: int  # 0 until persisted
    name: str
    apps: list[BundleApp] = field(default_factory=list)
    url_patterns: list[str] = field(default_factory=list)
    allow_all_apps: bool = False
    allow_all_urls: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class IntentionApp:
    app_id: str
    name: str
    from_bundle_id: int | None = None  # None if added ad-hoc


@dataclass(frozen=True)
class IntentionURL:
    pattern: str
    from_bundle_id: int | None = None  # None if added ad-hoc


@dataclass(frozen=True)
class AccessLogEntry:
    id: int
    intention_id: int
    timestamp: datetime
    type: AccessType
    identifier: str
    was_allowed: bool
    allowed_reason: AllowedReason | None
    was_override: bool
    added_to_learned: bool


@dataclass(frozen=True)
class LearnedRule:
    id: int
    intention_pattern: str  # Keyword signature, e.g. "write|design"
    type: AccessType
    identifier: str  # App id, or normalized domain for URLs
    allowed: bool
    created_at: datetime


@dataclass(frozen=True)
class IntentionHistoryItem:
    id: int
    text: str
    times_entered: int
    times_selected: int
    first_entered_at: datetime
    last_used_at: datetime


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the active intention handed to the rule engine."""

    intention: Intention
    apps: tuple[IntentionApp, ...] = ()
    urls: tuple[IntentionURL, ...] = ()
    bundle_ids: frozenset[int] = frozenset()
