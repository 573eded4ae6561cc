"""qualification.py – Request and stamp qualification rules

Pure helpers deciding whether a Slack message is a review request and whether
a reaction counts as a stamp.  The live webhook and the backfill engine both
go through these functions, which is what keeps their decisions identical.
"""

from __future__ import annotations

import re
from typing import Any, Callable, FrozenSet, Iterable, Optional
from urllib.parse import SplitResult, urlsplit, urlunsplit

from stamphog.config import DEFAULT_STAMP_EMOJIS

__all__ = [
    "REVIEW_HOSTS",
    "normalize_emoji",
    "tracked_emoji_set",
    "extract_qualifying_url",
    "find_qualifying_url_with_thread_fallback",
    "needs_thread_fallback",
    "url_host",
]

REVIEW_HOSTS = ("github.com", "graphite.dev")

_URL_PATTERN = re.compile(r"https?://[^\s>]+")
_TRAILING_PUNCTUATION = re.compile(r"[)>.,!?]+$")
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_emoji(raw: Optional[str]) -> str:
    """Strip ``:`` delimiters, surrounding whitespace and case."""
    return (raw or "").replace(":", "").strip().lower()


def tracked_emoji_set(emojis: Iterable[str] = DEFAULT_STAMP_EMOJIS) -> FrozenSet[str]:
    """Return the normalized set of reaction names that count as a stamp."""
    return frozenset(name for name in map(normalize_emoji, emojis) if name)


def _is_review_host(hostname: str) -> bool:
    host = hostname.lower()
    return any(host == domain or host.endswith("." + domain) for domain in REVIEW_HOSTS)


def _normalize_candidate(candidate: str) -> Optional[str]:
    cleaned = _TRAILING_PUNCTUATION.sub("", candidate).split("|", 1)[0]
    try:
        parts = urlsplit(cleaned)
        hostname = parts.hostname
        # Accessing .port validates the netloc (raises on garbage ports).
        parts.port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not hostname:
        return None
    if not _is_review_host(hostname):
        return None
    return _canonical_url(parts)


def _canonical_url(parts: SplitResult) -> str:
    """Rebuild *parts* with a lowercased host and without the default port."""
    netloc = parts.hostname.lower()
    if parts.port is not None and parts.port != _DEFAULT_PORTS[parts.scheme]:
        netloc = f"{netloc}:{parts.port}"
    userinfo = parts.netloc.rpartition("@")[0]
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path or "/", parts.query, parts.fragment))


def extract_qualifying_url(text: Optional[str]) -> Optional[str]:
    """Return the first review-host URL in *text*, in source order.

    Slack's ``<url|label>`` wrapping is tolerated: the ``|label`` suffix and
    trailing punctuation are removed before the host is checked.  Malformed
    URLs are skipped rather than raised.

    >>> extract_qualifying_url("please review https://github.com/org/repo/pull/42 thanks")
    'https://github.com/org/repo/pull/42'
    """
    if not text:
        return None
    for match in _URL_PATTERN.finditer(text):
        url = _normalize_candidate(match.group(0))
        if url:
            return url
    return None


def url_host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def needs_thread_fallback(thread_ts: Optional[str], reply_count: Optional[int]) -> bool:
    """A message with thread activity may carry its PR link in a reply."""
    return bool(thread_ts or (reply_count or 0) > 0)


def find_qualifying_url_with_thread_fallback(
    *,
    message_text: Optional[str],
    include_thread_fallback: bool,
    fetch_replies_page: Callable[[Optional[str]], Any],
) -> Optional[str]:
    """Extract a review URL from the message, then from its thread replies.

    *fetch_replies_page* is called with the continuation cursor (``None`` for
    the first page) and must return an object with ``ok``, ``messages`` and
    ``next_cursor`` attributes (see :class:`stamphog.inputs.slack.SlackPage`).
    Replies are searched in arrival order; the first match wins.  A failed or
    empty page ends the search without a match.
    """
    direct = extract_qualifying_url(message_text)
    if direct or not include_thread_fallback:
        return direct

    cursor: Optional[str] = None
    while True:
        page = fetch_replies_page(cursor)
        if not page.ok or not page.messages:
            return None
        for reply in page.messages:
            url = extract_qualifying_url(reply.get("text"))
            if url:
                return url
        if not page.next_cursor:
            return None
        cursor = page.next_cursor
