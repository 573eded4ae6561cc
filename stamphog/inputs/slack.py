"""slack.py – Slack Web API adapter

Purpose
-------
Wraps the official ``slack_sdk`` :class:`~slack_sdk.WebClient` behind the
handful of calls the stamp pipeline needs:

* ``users.info`` – directory lookup used by the identity resolver.
* ``conversations.history`` – point lookup of a reacted-to message and the
  paginated channel scan used by backfill.
* ``conversations.replies`` – paginated thread scan for the URL fallback.

Design goals
------------
1. **No exceptions for expected API failures** – page calls return a
   :class:`SlackPage` with ``ok=False`` and Slack's ``error`` string so callers
   decide whether a failure is fatal (backfill history) or best-effort (thread
   fallback).
2. **Identity lookups never fail** – :pyfunc:`resolve_user` always returns a
   :class:`UserSummary`, falling back to the raw user id.
3. **Plain dict messages** – messages are passed through as the dicts Slack
   returns (``ts``, ``user``, ``text``, ``thread_ts``, ``reply_count``,
   ``reactions``), so tests can script them directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError, SlackClientError

from stamphog import cloud_logging as logging
from stamphog.config import BACKFILL_PAGE_SIZE

__all__ = [
    "SlackGateway",
    "SlackPage",
    "UserSummary",
    "UserResolver",
    "resolve_user",
    "pick_display_name",
    "pick_image_url",
]

_LOOKUP_ERRORS = (SlackApiError, SlackClientError, OSError)


@dataclass(frozen=True)
class SlackPage:
    ok: bool
    messages: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class UserSummary:
    id: str
    display_name: str
    image_url: Optional[str] = None


def _api_error(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            return str(response.get("error") or "unknown_error")
        except AttributeError:
            pass
    return f"{type(exc).__name__}: {exc}"


def _to_page(response: Any) -> SlackPage:
    metadata = response.get("response_metadata") or {}
    return SlackPage(
        ok=bool(response.get("ok")),
        messages=list(response.get("messages") or []),
        next_cursor=metadata.get("next_cursor") or "",
        error=response.get("error"),
    )


class SlackGateway:
    """Thin façade over :class:`slack_sdk.WebClient` for the stamp pipeline."""

    def __init__(self, token: str, *, client: Optional[WebClient] = None):
        self._client = client or WebClient(token=token)

    def users_info(self, user_id: str) -> Dict[str, Any]:
        """Return the raw ``users.info`` body; raises on API/transport errors."""
        return self._client.users_info(user=user_id).data  # type: ignore[return-value]

    def message_at(self, channel_id: str, ts: str) -> Optional[Dict[str, Any]]:
        """Return the message posted at *ts* in *channel_id*, or ``None``."""
        try:
            response = self._client.conversations_history(
                channel=channel_id, latest=ts, inclusive=True, limit=1
            )
        except _LOOKUP_ERRORS as exc:
            logging.log_text(
                f"conversations.history lookup failed for {channel_id}/{ts}: {_api_error(exc)}",
                severity="WARNING",
            )
            return None
        messages = response.get("messages") or []
        # Only an exact ts match is the reacted-to message.
        if messages and messages[0].get("ts") == ts:
            return messages[0]
        return None

    def history_page(
        self,
        channel_id: str,
        *,
        cursor: Optional[str] = None,
        oldest: Optional[str] = None,
        limit: int = BACKFILL_PAGE_SIZE,
    ) -> SlackPage:
        params: Dict[str, Any] = {"channel": channel_id, "limit": limit, "inclusive": True}
        if cursor:
            params["cursor"] = cursor
        if oldest:
            params["oldest"] = oldest
        try:
            return _to_page(self._client.conversations_history(**params))
        except _LOOKUP_ERRORS as exc:
            return SlackPage(ok=False, error=_api_error(exc))

    def replies_page(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        cursor: Optional[str] = None,
        limit: int = BACKFILL_PAGE_SIZE,
    ) -> SlackPage:
        params: Dict[str, Any] = {
            "channel": channel_id,
            "ts": thread_ts,
            "limit": limit,
            "inclusive": True,
        }
        if cursor:
            params["cursor"] = cursor
        try:
            return _to_page(self._client.conversations_replies(**params))
        except _LOOKUP_ERRORS as exc:
            return SlackPage(ok=False, error=_api_error(exc))


# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------


def pick_display_name(user: Dict[str, Any], fallback_id: str) -> str:
    profile = user.get("profile") or {}
    candidates = (
        profile.get("display_name_normalized"),
        profile.get("display_name"),
        profile.get("real_name_normalized"),
        profile.get("real_name"),
        user.get("real_name"),
        user.get("name"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return fallback_id


def pick_image_url(profile: Optional[Dict[str, Any]]) -> Optional[str]:
    """Largest available avatar variant first."""
    profile = profile or {}
    for key in ("image_512", "image_192", "image_72", "image_48", "image_32", "image_24"):
        value = profile.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def resolve_user(gateway: Any, user_id: str) -> UserSummary:
    """
    Resolve *user_id* to a display profile via ``users.info``.

    Never raises: network errors, unknown users and malformed bodies all yield
    ``UserSummary(id=user_id, display_name=user_id)`` so identity problems can
    not block ingestion.
    """
    try:
        body = gateway.users_info(user_id)
    except _LOOKUP_ERRORS as exc:
        logging.log_text(
            f"users.info lookup failed for {user_id}: {_api_error(exc)}",
            severity="WARNING",
        )
        return UserSummary(id=user_id, display_name=user_id)

    user = body.get("user") if isinstance(body, dict) else None
    if not (isinstance(body, dict) and body.get("ok") and isinstance(user, dict)):
        error = body.get("error") if isinstance(body, dict) else None
        logging.log_text(
            f"users.info returned no profile for {user_id}: {error or 'unknown_error'}",
            severity="WARNING",
        )
        return UserSummary(id=user_id, display_name=user_id)

    profile = user.get("profile")
    return UserSummary(
        id=user.get("id") or user_id,
        display_name=pick_display_name(user, user_id),
        image_url=pick_image_url(profile if isinstance(profile, dict) else None),
    )


class UserResolver:
    """Per-run memo of :pyfunc:`resolve_user` results.

    One instance lives for a single backfill run or webhook delivery; there is
    no eviction and no cross-run sharing.
    """

    def __init__(self, gateway: Any, *, lookup: Callable[[Any, str], UserSummary] = resolve_user):
        self._gateway = gateway
        self._lookup = lookup
        self._cache: Dict[str, UserSummary] = {}

    def __call__(self, user_id: str) -> UserSummary:
        cached = self._cache.get(user_id)
        if cached is None:
            cached = self._lookup(self._gateway, user_id)
            self._cache[user_id] = cached
        return cached

    def __len__(self) -> int:
        return len(self._cache)
