"""Tests for `stamphog.events` and `stamphog.dedupe`."""

from __future__ import annotations

from stamphog.dedupe import (
    build_reaction_dedupe_key,
    build_request_dedupe_key,
    default_stamp_source,
    reaction_source,
)
from stamphog.events import (
    MessageEvent,
    ReactionEvent,
    UnhandledEvent,
    parse_event,
    to_occurred_at_ms,
)


def test_parse_message_event():
    event = parse_event(
        {
            "type": "message",
            "user": "U1",
            "channel": "C1",
            "ts": "1712345678.000100",
            "thread_ts": "1712345678.000100",
            "reply_count": "2",
            "text": "hi",
            "event_ts": "1712345678.000100",
        }
    )
    assert isinstance(event, MessageEvent)
    assert event.reply_count == 2
    assert event.subtype is None


def test_parse_reaction_events():
    raw = {
        "type": "reaction_removed",
        "user": "U2",
        "reaction": "stamp",
        "item": {"type": "message", "channel": "C1", "ts": "1.2"},
        "event_ts": "3.4",
    }
    event = parse_event(raw)
    assert isinstance(event, ReactionEvent)
    assert not event.added
    assert (event.channel, event.ts) == ("C1", "1.2")

    added = parse_event({**raw, "type": "reaction_added", "item": None})
    assert added.added
    assert added.channel is None


def test_parse_unknown_and_non_mapping():
    assert parse_event({"type": "app_mention"}) == UnhandledEvent(type="app_mention")
    assert parse_event("nope") == UnhandledEvent(type=None)


def test_to_occurred_at_ms_floors_and_rejects_garbage():
    assert to_occurred_at_ms("1712345678.999900") == 1712345678999
    assert to_occurred_at_ms("nan") is None
    assert to_occurred_at_ms("soon") is None
    assert to_occurred_at_ms(None) is None


# ---------------------------------------------------------------------------
# Dedupe keys
# ---------------------------------------------------------------------------


def test_dedupe_key_formats():
    assert build_request_dedupe_key("C1", "1.000100") == "request:C1:1.000100"
    assert (
        build_reaction_dedupe_key("C1", "1.000100", "stamp", "U9")
        == "reaction:C1:1.000100:stamp:U9"
    )


def test_reaction_keys_distinguish_giver_and_reaction():
    base = build_reaction_dedupe_key("C1", "1.0", "stamp", "U1")
    assert base != build_reaction_dedupe_key("C1", "1.0", "stamp", "U2")
    assert base != build_reaction_dedupe_key("C1", "1.0", "white_tick", "U1")


def test_source_tags():
    assert reaction_source("stamp") == "slack:reaction:stamp"
    assert default_stamp_source("stamp") == "stamp:stamp"
