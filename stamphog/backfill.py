"""backfill.py – Retroactive channel reconstruction

Purpose
-------
Pages through a channel's ``conversations.history`` and replays every message
through the same qualification rules and ingestion mutations the live webhook
uses.  Because both paths derive identical dedupe keys, a backfill can overlap
live traffic or be re-run at any time: already-stored records come back as
duplicates.

Bounds
------
* Never reaches further back than :data:`~stamphog.config.BACKFILL_WINDOW_DAYS`.
* Scans at most ``max_messages`` (default 5,000, hard ceiling 50,000).

Diagnostics are accumulated in an immutable :class:`BackfillTally` that each
step returns a new copy of; nothing is shared between runs.
"""

from __future__ import annotations

import json
import math
import time
from collections import Counter
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy.engine import Engine

from stamphog import cloud_logging as logging
from stamphog.config import (
    BACKFILL_PAGE_SIZE,
    BACKFILL_WINDOW_DAYS,
    DEFAULT_MAX_BACKFILL_MESSAGES,
    MAX_BACKFILL_MESSAGES,
)
from stamphog.database.mutations import ingest_request, ingest_stamp
from stamphog.dedupe import (
    build_reaction_dedupe_key,
    build_request_dedupe_key,
    reaction_source,
)
from stamphog.errors import SlackHistoryError
from stamphog.events import to_occurred_at_ms
from stamphog.inputs.slack import UserResolver, UserSummary
from stamphog.qualification import (
    find_qualifying_url_with_thread_fallback,
    needs_thread_fallback,
    normalize_emoji,
    tracked_emoji_set,
    url_host,
)

__all__ = [
    "BackfillTally",
    "BackfillSummary",
    "run_backfill",
    "backfill_channels",
    "backfill_configured_channels",
    "bounded_max_messages",
    "effective_oldest_ts",
]

DAY_SECONDS = 24 * 60 * 60
TOP_COUNT_LIMIT = 20


@dataclass(frozen=True)
class BackfillTally:
    scanned_messages: int = 0
    qualifying_messages: int = 0
    created_events: int = 0
    duplicate_events: int = 0
    created_requests: int = 0
    duplicate_requests: int = 0
    skipped_self_reactions: int = 0
    skipped_missing_url: int = 0
    skipped_missing_author: int = 0
    skipped_no_reactions: int = 0
    skipped_no_tracked_reactions: int = 0
    messages_with_any_reaction: int = 0
    messages_with_tracked_reaction: int = 0
    all_reaction_names: Counter = field(default_factory=Counter)
    tracked_reaction_names: Counter = field(default_factory=Counter)
    untracked_reaction_names: Counter = field(default_factory=Counter)
    qualifying_url_hosts: Counter = field(default_factory=Counter)

    def bump(self, **increments: int) -> "BackfillTally":
        return replace(
            self,
            **{name: getattr(self, name) + amount for name, amount in increments.items()},
        )

    def count(self, counter_name: str, key: Optional[str]) -> "BackfillTally":
        if not key:
            return self
        updated = Counter(getattr(self, counter_name))
        updated[key] += 1
        return replace(self, **{counter_name: updated})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _top_counts(counter: Counter, limit: int = TOP_COUNT_LIMIT) -> List[Dict[str, Any]]:
    ranked = sorted(counter.items(), key=lambda item: -item[1])[:limit]
    return [{"key": key, "count": count} for key, count in ranked]


@dataclass(frozen=True)
class BackfillSummary:
    channel_id: str
    tally: BackfillTally
    tracked_emoji_set: FrozenSet[str]
    requested_oldest_ts: Optional[str]
    applied_oldest_ts: str
    backfill_window_days: int = BACKFILL_WINDOW_DAYS

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"channelId": self.channel_id}
        for tally_field in fields(BackfillTally):
            value = getattr(self.tally, tally_field.name)
            if isinstance(value, Counter):
                continue
            payload[_camel(tally_field.name)] = value
        payload.update(
            {
                "topAllReactionNames": _top_counts(self.tally.all_reaction_names),
                "topTrackedReactionNames": _top_counts(self.tally.tracked_reaction_names),
                "topUntrackedReactionNames": _top_counts(self.tally.untracked_reaction_names),
                "qualifyingUrlHosts": _top_counts(self.tally.qualifying_url_hosts),
                "trackedEmojiSet": sorted(self.tracked_emoji_set),
                "requestedOldestTs": self.requested_oldest_ts,
                "appliedOldestTs": self.applied_oldest_ts,
                "backfillWindowDays": self.backfill_window_days,
            }
        )
        return payload


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------


def bounded_max_messages(max_messages: Optional[int]) -> int:
    requested = DEFAULT_MAX_BACKFILL_MESSAGES if max_messages is None else int(max_messages)
    return max(1, min(MAX_BACKFILL_MESSAGES, requested))


def effective_oldest_ts(
    requested_oldest_ts: Optional[str], *, now: Optional[float] = None
) -> str:
    """Clamp the requested lower bound to the retention window."""
    current = time.time() if now is None else now
    cutoff = str(int(current - BACKFILL_WINDOW_DAYS * DAY_SECONDS))
    if not requested_oldest_ts:
        return cutoff
    try:
        requested = float(requested_oldest_ts)
    except ValueError:
        return cutoff
    if not math.isfinite(requested) or requested < float(cutoff):
        return cutoff
    return requested_oldest_ts


# ---------------------------------------------------------------------------
# Per-message processing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Runtime:
    engine: Engine
    gateway: Any
    channel_id: str
    tracked: FrozenSet[str]
    resolve: Callable[[str], UserSummary]


def _ingest_reaction_givers(
    runtime: _Runtime,
    tally: BackfillTally,
    *,
    requester_id: str,
    message_ref: str,
    reaction_name: str,
    qualifying_url: str,
    occurred_at: Optional[int],
    giver_ids: Iterable[str],
) -> BackfillTally:
    for giver_id in giver_ids:
        if giver_id == requester_id:
            tally = tally.bump(skipped_self_reactions=1)
            continue

        giver = runtime.resolve(giver_id)
        requester = runtime.resolve(requester_id)
        result = ingest_stamp(
            runtime.engine,
            giver_id=giver_id,
            requester_id=requester_id,
            reaction=reaction_name,
            source=reaction_source(reaction_name),
            channel_id=runtime.channel_id,
            occurred_at=occurred_at,
            pr_url=qualifying_url,
            dedupe_key=build_reaction_dedupe_key(
                runtime.channel_id, message_ref, reaction_name, giver_id
            ),
            giver_display_name=giver.display_name,
            giver_image_url=giver.image_url,
            requester_display_name=requester.display_name,
            requester_image_url=requester.image_url,
        )
        tally = tally.bump(**{"duplicate_events" if result.duplicate else "created_events": 1})
    return tally


def _process_reactions(
    runtime: _Runtime,
    tally: BackfillTally,
    message: Dict[str, Any],
    *,
    requester_id: str,
    message_ref: str,
    qualifying_url: str,
) -> BackfillTally:
    reactions = message.get("reactions") or []
    if not reactions:
        return tally.bump(skipped_no_reactions=1, skipped_no_tracked_reactions=1)

    tally = tally.bump(messages_with_any_reaction=1)
    occurred_at = to_occurred_at_ms(message.get("ts"))
    matched_tracked = False

    for reaction in reactions:
        reaction_name = normalize_emoji(reaction.get("name"))
        tally = tally.count("all_reaction_names", reaction_name)
        if reaction_name not in runtime.tracked:
            tally = tally.count("untracked_reaction_names", reaction_name)
            continue

        matched_tracked = True
        tally = tally.count("tracked_reaction_names", reaction_name)
        tally = _ingest_reaction_givers(
            runtime,
            tally,
            requester_id=requester_id,
            message_ref=message_ref,
            reaction_name=reaction_name,
            qualifying_url=qualifying_url,
            occurred_at=occurred_at,
            giver_ids=reaction.get("users") or [],
        )

    if matched_tracked:
        return tally.bump(qualifying_messages=1, messages_with_tracked_reaction=1)
    return tally.bump(skipped_no_tracked_reactions=1)


def _process_message(
    runtime: _Runtime, tally: BackfillTally, message: Dict[str, Any]
) -> BackfillTally:
    tally = tally.bump(scanned_messages=1)

    requester_id = message.get("user")
    if not requester_id:
        return tally.bump(skipped_missing_author=1)

    message_ref = message.get("ts") or "0"
    qualifying_url = find_qualifying_url_with_thread_fallback(
        message_text=message.get("text"),
        include_thread_fallback=needs_thread_fallback(
            message.get("thread_ts"), message.get("reply_count")
        ),
        fetch_replies_page=lambda cursor: runtime.gateway.replies_page(
            runtime.channel_id, message_ref, cursor=cursor
        ),
    )
    if not qualifying_url:
        return tally.bump(skipped_missing_url=1)

    tally = tally.count("qualifying_url_hosts", url_host(qualifying_url))

    requester = runtime.resolve(requester_id)
    result = ingest_request(
        runtime.engine,
        requester_id=requester_id,
        channel_id=runtime.channel_id,
        message_ref=message_ref,
        occurred_at=to_occurred_at_ms(message.get("ts")),
        pr_url=qualifying_url,
        dedupe_key=build_request_dedupe_key(runtime.channel_id, message_ref),
        display_name=requester.display_name,
        image_url=requester.image_url,
    )
    tally = tally.bump(**{"duplicate_requests" if result.duplicate else "created_requests": 1})

    return _process_reactions(
        runtime,
        tally,
        message,
        requester_id=requester_id,
        message_ref=message_ref,
        qualifying_url=qualifying_url,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def run_backfill(
    engine: Engine,
    gateway: Any,
    channel_id: str,
    *,
    oldest_ts: Optional[str] = None,
    max_messages: Optional[int] = None,
    stamp_emojis: Optional[Iterable[str]] = None,
    now: Optional[float] = None,
) -> BackfillSummary:
    """
    Reconstruct requests and stamps for *channel_id* from Slack history.

    Parameters
    ----------
    engine:
        Store to ingest into.
    gateway:
        :class:`~stamphog.inputs.slack.SlackGateway` (or an object with the
        same ``history_page`` / ``replies_page`` / ``users_info`` methods).
    oldest_ts:
        Optional Slack ``ts`` lower bound; clamped to the backfill window.
    max_messages:
        Scan cap, clamped to ``[1, MAX_BACKFILL_MESSAGES]``.

    Raises
    ------
    SlackHistoryError
        When any history page fails.  Records ingested before the failure
        stay committed; re-running is safe.
    """
    limit = bounded_max_messages(max_messages)
    applied_oldest = effective_oldest_ts(oldest_ts, now=now)
    tracked = (
        tracked_emoji_set(stamp_emojis) if stamp_emojis is not None else tracked_emoji_set()
    )
    runtime = _Runtime(
        engine=engine,
        gateway=gateway,
        channel_id=channel_id,
        tracked=tracked,
        resolve=UserResolver(gateway),
    )

    logging.log_text(
        f"Backfill started for {channel_id} (oldest={applied_oldest}, max={limit}).",
        severity="INFO",
    )

    tally = BackfillTally()
    cursor: Optional[str] = None
    while tally.scanned_messages < limit:
        page = gateway.history_page(
            channel_id, cursor=cursor, oldest=applied_oldest, limit=BACKFILL_PAGE_SIZE
        )
        if not page.ok:
            logging.log_text(
                f"Backfill for {channel_id} aborted: {page.error or 'unknown_error'}",
                severity="ERROR",
            )
            raise SlackHistoryError(page.error)
        if not page.messages:
            break

        for message in page.messages:
            if tally.scanned_messages >= limit:
                break
            tally = _process_message(runtime, tally, message)

        if not page.next_cursor:
            break
        cursor = page.next_cursor

    summary = BackfillSummary(
        channel_id=channel_id,
        tally=tally,
        tracked_emoji_set=tracked,
        requested_oldest_ts=oldest_ts,
        applied_oldest_ts=applied_oldest,
    )
    logging.log_text(
        f"stamphog backfill summary {json.dumps(summary.to_dict())}", severity="INFO"
    )
    return summary


def backfill_channels(
    engine: Engine,
    gateway: Any,
    channel_ids: Iterable[str],
    **kwargs: Any,
) -> Dict[str, Any]:
    """Backfill several channels, collecting per-channel failures."""
    channel_ids = list(channel_ids)
    failures: List[Dict[str, str]] = []
    totals = {"scanned": 0, "events": 0, "requests": 0}

    for channel_id in channel_ids:
        try:
            summary = run_backfill(engine, gateway, channel_id, **kwargs)
        except SlackHistoryError as exc:
            failures.append({"channelId": channel_id, "error": str(exc)})
            continue
        totals["scanned"] += summary.tally.scanned_messages
        totals["events"] += summary.tally.created_events
        totals["requests"] += summary.tally.created_requests

    return {
        "channels": len(channel_ids),
        "failures": failures,
        "totalScannedMessages": totals["scanned"],
        "totalCreatedEvents": totals["events"],
        "totalCreatedRequests": totals["requests"],
    }


def backfill_configured_channels(
    engine: Engine, gateway: Any, settings: Any, **kwargs: Any
) -> Dict[str, Any]:
    """Backfill every channel listed in ``CHANNEL_IDS``.

    Raises :class:`~stamphog.errors.ConfigurationError` when the list is
    missing or empty.
    """
    kwargs.setdefault("stamp_emojis", settings.stamp_emojis)
    return backfill_channels(engine, gateway, settings.channel_ids, **kwargs)
