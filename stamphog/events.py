"""events.py – Slack Events API payload variants

Inbound ``event_callback`` payloads are narrowed once, here, into one of three
frozen dataclasses.  The webhook dispatches on the concrete type, so a new
Slack event type has to be added to :data:`SlackEvent` before it can be
handled anywhere.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class MessageEvent:
    subtype: Optional[str]
    user: Optional[str]
    channel: Optional[str]
    ts: Optional[str]
    thread_ts: Optional[str]
    reply_count: Optional[int]
    text: Optional[str]
    event_ts: Optional[str]


@dataclass(frozen=True)
class ReactionEvent:
    added: bool
    user: Optional[str]
    reaction: Optional[str]
    channel: Optional[str]
    ts: Optional[str]
    event_ts: Optional[str]


@dataclass(frozen=True)
class UnhandledEvent:
    type: Optional[str]


SlackEvent = Union[MessageEvent, ReactionEvent, UnhandledEvent]


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_event(raw: Any) -> SlackEvent:
    """Narrow a raw ``event`` object from an ``event_callback`` envelope."""
    if not isinstance(raw, Mapping):
        return UnhandledEvent(type=None)

    event_type = raw.get("type")
    if event_type == "message":
        return MessageEvent(
            subtype=_str(raw.get("subtype")),
            user=_str(raw.get("user")),
            channel=_str(raw.get("channel")),
            ts=_str(raw.get("ts")),
            thread_ts=_str(raw.get("thread_ts")),
            reply_count=_int(raw.get("reply_count")),
            text=_str(raw.get("text")),
            event_ts=_str(raw.get("event_ts")),
        )

    if event_type in ("reaction_added", "reaction_removed"):
        item = raw.get("item")
        item = item if isinstance(item, Mapping) else {}
        return ReactionEvent(
            added=event_type == "reaction_added",
            user=_str(raw.get("user")),
            reaction=_str(raw.get("reaction")),
            channel=_str(item.get("channel")),
            ts=_str(item.get("ts")),
            event_ts=_str(raw.get("event_ts")),
        )

    return UnhandledEvent(type=_str(event_type))


def to_occurred_at_ms(slack_ts: Optional[str]) -> Optional[int]:
    """Convert a Slack ``ts`` (``"1712345678.000100"``) to epoch milliseconds."""
    if not slack_ts:
        return None
    try:
        seconds = float(slack_ts)
    except ValueError:
        return None
    if not math.isfinite(seconds):
        return None
    return int(seconds * 1000)
