"""Pattern matching shared by the rule engine and config rules.

Two URL matching styles coexist and are used at different call sites:

- ``url_contains``: lax substring containment after stripping the scheme and
  a leading ``www.``. Used for the always-allowed/always-blocked lists, ad-hoc
  intention URLs and config intention rules.
- ``glob_match``: anchored, case-insensitive full-string match where ``*``
  is the only wildcard. Used for bundle URL patterns.

Switching a substring call site to glob matching changes which URLs are
allowed, so the two must stay separate.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache

logger = logging.getLogger(__name__)

_SCHEMES = ("https://", "http://")


def normalize_url(url: str) -> str:
    """Strip a leading http(s):// scheme and then a leading ``www.``."""
    normalized = url
    for scheme in _SCHEMES:
        if normalized.startswith(scheme):
            normalized = normalized[len(scheme):]
            break
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return normalized


def extract_domain(url: str) -> str:
    """Normalized host part of a URL: everything before the first slash."""
    return normalize_url(url).split("/", 1)[0]


def url_contains(url: str, pattern: str) -> bool:
    """Substring match on normalized forms, or on the raw forms."""
    if not pattern:
        return False
    return normalize_url(pattern) in normalize_url(url) or pattern in url


@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern | None:
    regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
    try:
        return re.compile(regex, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Ignoring unparseable glob pattern {pattern!r}: {e}")
        return None


def glob_match(url: str, pattern: str) -> bool:
    """Anchored glob match. An unparseable pattern never matches."""
    compiled = _compile_glob(pattern)
    if compiled is None:
        return False
    return compiled.match(url) is not None


def matches_keywords(text: str, pattern: str) -> bool:
    """True if the lowercased text contains any ``|``-separated keyword.

    Plain substring containment, so "art" matches "chart". Empty keywords
    are ignored.
    """
    lowered = text.lower()
    keywords = [k.strip().lower() for k in pattern.split("|")]
    return any(k in lowered for k in keywords if k)


def keyword_signature(text: str) -> str:
    """Derive a keyword pattern from intention text.

    "Write design doc" -> "write|design". Words of 3 characters or fewer
    are dropped.
    """
    words = re.split(r"[\W_]+", text.lower())
    return "|".join(w for w in words if len(w) > 3)
