"""Rule engine: app or URL access request → allow/block decision with a reason.

Requests are evaluated against a snapshot of the active intention through an
ordered pipeline; the first step that applies decides:

1. always-allowed list (rules.yaml)
2. always-blocked list (rules.yaml)
3. a selected bundle with allow-all-apps / allow-all-urls
4. apps/URLs attached to the intention (ad-hoc or from a bundle)
5. strict mode: block everything else
6. keyword-triggered intention rules (rules.yaml)
7. learned rules from earlier overrides
8. the optional classifier
9. block

The engine never writes. Recording the decision is up to the caller.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Protocol, TypeVar

from intentguard.config import RulesConfig
from intentguard.models import (
    AccessType,
    AllowedReason,
    FilterResult,
    Intention,
    IntentionURL,
    SessionSnapshot,
)
from intentguard.rules.matching import (
    extract_domain,
    glob_match,
    matches_keywords,
    normalize_url,
    url_contains,
)
from intentguard.storage.repository import BundleRepository
from intentguard.storage.sessions import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Classifier(Protocol):
    """Semantic fallback consulted after every deterministic rule has missed.

    Return None to abstain; the engine then blocks.
    """

    def classify(
        self, kind: AccessType, identifier: str, display_name: str, intention: Intention
    ) -> FilterResult | None: ...


class RuleEngine:
    """Decides whether an app or URL fits the active intention."""

    def __init__(
        self,
        rules: RulesConfig,
        bundles: BundleRepository,
        sessions: SessionStore,
        classifier: Classifier | None = None,
    ) -> None:
        self._rules = rules
        self._bundles = bundles
        self._sessions = sessions
        self._classifier = classifier

    def evaluate(
        self,
        kind: AccessType,
        identifier: str,
        display_name: str = "",
        snapshot: SessionSnapshot | None = None,
    ) -> FilterResult:
        """Evaluate one access request. Same inputs and stored state give the same result."""
        if snapshot is None:
            return FilterResult.allow(AllowedReason.ALWAYS_ALLOWED, "No active intention")

        if kind is AccessType.APP:
            result = self._check_app(identifier, display_name, snapshot)
        else:
            result = self._check_url(identifier, display_name, snapshot)

        logger.debug(
            f"{kind.value} {identifier!r}: "
            f"{'allow' if result.allowed else 'block'} ({result.reason.value if result.reason else result.message})"
        )
        return result

    # -- Apps ----------------------------------------------------------------

    def _check_app(self, app_id: str, display_name: str, snapshot: SessionSnapshot) -> FilterResult:
        intention = snapshot.intention

        if app_id in self._rules.always_allowed.apps:
            return FilterResult.allow(AllowedReason.ALWAYS_ALLOWED)

        if app_id in self._rules.always_blocked.apps:
            return FilterResult.block("App is on the always-blocked list")

        if self._has_allow_all_bundle(snapshot, AccessType.APP):
            return FilterResult.allow(AllowedReason.BUNDLE, "Bundle allows all apps")

        for app in snapshot.apps:
            if app.app_id == app_id:
                reason = AllowedReason.BUNDLE if app.from_bundle_id is not None else AllowedReason.EXPLICIT
                return FilterResult.allow(reason)

        if not intention.llm_filtering_enabled:
            return FilterResult.block("Strict mode: only explicitly allowed apps are permitted")

        for rule in self._rules.intention_rules:
            if matches_keywords(intention.text, rule.pattern) and app_id in rule.allow_apps:
                return FilterResult.allow(AllowedReason.CONFIG)

        learned = self._check_learned(AccessType.APP, app_id)
        if learned is not None:
            return learned

        return self._classify_or_block(AccessType.APP, app_id, display_name, intention)

    # -- URLs ----------------------------------------------------------------

    def _check_url(self, url: str, display_name: str, snapshot: SessionSnapshot) -> FilterResult:
        intention = snapshot.intention

        for pattern in self._rules.always_allowed.urls:
            if url_contains(url, pattern):
                return FilterResult.allow(AllowedReason.ALWAYS_ALLOWED)

        for pattern in self._rules.always_blocked.urls:
            if url_contains(url, pattern):
                return FilterResult.block("URL is on the always-blocked list")

        if self._has_allow_all_bundle(snapshot, AccessType.URL):
            return FilterResult.allow(AllowedReason.BUNDLE, "Bundle allows all URLs")

        for intention_url in snapshot.urls:
            if _matches_intention_url(url, intention_url):
                reason = (
                    AllowedReason.BUNDLE if intention_url.from_bundle_id is not None else AllowedReason.EXPLICIT
                )
                return FilterResult.allow(reason)

        if not intention.llm_filtering_enabled:
            return FilterResult.block("Strict mode: only explicitly allowed URLs are permitted")

        for rule in self._rules.intention_rules:
            if not matches_keywords(intention.text, rule.pattern):
                continue
            if any(url_contains(url, pattern) for pattern in rule.allow_urls):
                return FilterResult.allow(AllowedReason.CONFIG)

        learned = self._check_learned(AccessType.URL, extract_domain(url))
        if learned is not None:
            return learned

        return self._classify_or_block(AccessType.URL, url, display_name, intention)

    # -- Shared steps --------------------------------------------------------

    def _has_allow_all_bundle(self, snapshot: SessionSnapshot, kind: AccessType) -> bool:
        bundles = self._read(lambda: self._bundles.get_bundles_by_ids(snapshot.bundle_ids), [])
        if kind is AccessType.APP:
            return any(b.allow_all_apps for b in bundles)
        return any(b.allow_all_urls for b in bundles)

    def _check_learned(self, kind: AccessType, identifier: str) -> FilterResult | None:
        rule = self._read(lambda: self._sessions.find_learned_rule(kind, identifier), None)
        if rule is None:
            return None
        if rule.allowed:
            return FilterResult.allow(AllowedReason.LEARNED)
        return FilterResult.block("Previously marked as distraction")

    def _classify_or_block(
        self, kind: AccessType, identifier: str, display_name: str, intention: Intention
    ) -> FilterResult:
        label = "App" if kind is AccessType.APP else "URL"
        if self._classifier is not None:
            try:
                verdict = self._classifier.classify(kind, identifier, display_name, intention)
            except Exception as e:
                logger.error(f"Classifier failed for {identifier!r}: {e}")
                verdict = None
            if verdict is not None:
                return verdict
        return FilterResult.block(f"{label} not recognized for this intention")

    def _read(self, query: Callable[[], T], default: T) -> T:
        """Run a storage read; a failing read counts as "nothing stored"."""
        try:
            return query()
        except sqlite3.Error as e:
            logger.error(f"Storage read failed during evaluation: {e}")
            return default


def _matches_intention_url(url: str, intention_url: IntentionURL) -> bool:
    """Substring match for every attached URL; bundle patterns also match as globs."""
    pattern = intention_url.pattern
    if url_contains(url, pattern):
        return True
    if intention_url.from_bundle_id is None:
        return False
    return glob_match(normalize_url(url), normalize_url(pattern)) or glob_match(url, pattern)
