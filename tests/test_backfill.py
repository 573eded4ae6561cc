"""Tests for `stamphog.backfill`."""

from __future__ import annotations

import time

import pytest
from sqlalchemy import func, select

from conftest import PR_URL, chain_pages, recent_ts
from stamphog.backfill import (
    BackfillTally,
    backfill_channels,
    backfill_configured_channels,
    bounded_max_messages,
    effective_oldest_ts,
    run_backfill,
)
from stamphog.config import Settings
from stamphog.database.models import RequestRecord, StampEvent
from stamphog.dedupe import build_reaction_dedupe_key
from stamphog.errors import ConfigurationError, SlackHistoryError
from stamphog.helper_functions import session_scope
from stamphog.inputs.slack import SlackPage


def _count(engine, model):
    with session_scope(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


def _history_message(ts, *, user="UREQ", text=f"review {PR_URL}", reactions=None, **extra):
    message = {"type": "message", "user": user, "ts": ts, "text": text, **extra}
    if reactions is not None:
        message["reactions"] = reactions
    return message


@pytest.fixture
def history(fake_slack):
    """Two pages: a stamped request, a self-stamped request and noise."""
    stamped = _history_message(
        recent_ts(7200),
        reactions=[
            {"name": "stamp", "users": ["UGIVE", "UREQ"], "count": 2},
            {"name": "tada", "users": ["UGIVE"], "count": 1},
        ],
    )
    no_reactions = _history_message(recent_ts(5400))
    chatter = _history_message(recent_ts(3600), text="lunch?")
    authorless = _history_message(recent_ts(1800), user=None)
    fake_slack.history["C1"] = chain_pages([stamped, no_reactions], [chatter, authorless])
    return stamped


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "requested, expected", [(None, 5000), (0, 1), (-5, 1), (10, 10), (10**9, 50_000)]
)
def test_bounded_max_messages(requested, expected):
    assert bounded_max_messages(requested) == expected


def test_effective_oldest_ts_is_clamped_to_window():
    now = 1_700_000_000.0
    cutoff = str(int(now - 90 * 86400))

    assert effective_oldest_ts(None, now=now) == cutoff
    assert effective_oldest_ts("100.0", now=now) == cutoff
    assert effective_oldest_ts("garbage", now=now) == cutoff
    assert effective_oldest_ts("1699999000.000100", now=now) == "1699999000.000100"


def test_tally_is_immutable():
    tally = BackfillTally()
    bumped = tally.bump(scanned_messages=2).count("all_reaction_names", "stamp")

    assert tally.scanned_messages == 0
    assert not tally.all_reaction_names
    assert bumped.scanned_messages == 2
    assert bumped.all_reaction_names["stamp"] == 1


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


def test_backfill_summary_counts(engine, fake_slack, history):
    summary = run_backfill(engine, fake_slack, "C1")
    data = summary.to_dict()

    assert data["channelId"] == "C1"
    assert data["scannedMessages"] == 4
    assert data["createdRequests"] == 2
    assert data["createdEvents"] == 1
    assert data["skippedSelfReactions"] == 1
    assert data["skippedMissingUrl"] == 1
    assert data["skippedMissingAuthor"] == 1
    assert data["skippedNoReactions"] == 1
    assert data["messagesWithTrackedReaction"] == 1
    assert data["topUntrackedReactionNames"] == [{"key": "tada", "count": 1}]
    assert data["qualifyingUrlHosts"] == [{"key": "github.com", "count": 2}]
    assert data["trackedEmojiSet"] == sorted(data["trackedEmojiSet"])
    assert data["backfillWindowDays"] == 90
    assert [call["cursor"] for call in fake_slack.history_calls] == [None, "cursor-1"]


def test_backfill_is_replay_safe(engine, fake_slack, history):
    first = run_backfill(engine, fake_slack, "C1")
    second = run_backfill(engine, fake_slack, "C1")

    assert first.tally.created_events == 1
    assert second.tally.created_events == 0
    assert second.tally.duplicate_events == 1
    assert second.tally.created_requests == 0
    assert second.tally.duplicate_requests == 2
    assert _count(engine, StampEvent) == 1


def test_backfill_matches_live_dedupe_key(engine, fake_slack, history):
    run_backfill(engine, fake_slack, "C1")
    with session_scope(engine) as session:
        stamp = session.scalars(select(StampEvent)).one()
    assert stamp.dedupe_key == build_reaction_dedupe_key("C1", history["ts"], "stamp", "UGIVE")
    assert stamp.source == "slack:reaction:stamp"
    assert stamp.giver_id != stamp.requester_id


def test_identity_lookups_are_memoized_per_run(engine, fake_slack, history):
    run_backfill(engine, fake_slack, "C1")
    assert sorted(fake_slack.lookups) == ["UGIVE", "UREQ"]


def test_message_cap_stops_scan(engine, fake_slack, history):
    summary = run_backfill(engine, fake_slack, "C1", max_messages=1)
    assert summary.tally.scanned_messages == 1
    assert len(fake_slack.history_calls) == 1


def test_thread_reply_supplies_url(engine, fake_slack):
    ts = recent_ts()
    fake_slack.history["C1"] = chain_pages(
        [_history_message(ts, text="see thread", thread_ts=ts, reply_count=1)]
    )
    fake_slack.replies[("C1", ts)] = chain_pages([{"text": "parent"}, {"text": PR_URL}])

    summary = run_backfill(engine, fake_slack, "C1")

    assert summary.tally.created_requests == 1
    assert _count(engine, RequestRecord) == 1


def test_custom_emoji_set(engine, fake_slack):
    fake_slack.history["C1"] = chain_pages(
        [_history_message(recent_ts(), reactions=[{"name": "stamp", "users": ["UGIVE"]}])]
    )
    summary = run_backfill(engine, fake_slack, "C1", stamp_emojis=["lgtm"])
    assert summary.tally.created_events == 0
    assert summary.tally.skipped_no_tracked_reactions == 1


def test_oldest_bound_sent_to_slack(engine, fake_slack):
    now = time.time()
    run_backfill(engine, fake_slack, "C1", oldest_ts="1.0", now=now)
    assert fake_slack.history_calls[0]["oldest"] == str(int(now - 90 * 86400))


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_history_failure_is_fatal(engine, fake_slack):
    fake_slack.history["C1"] = [SlackPage(ok=False, error="channel_not_found")]
    with pytest.raises(SlackHistoryError) as excinfo:
        run_backfill(engine, fake_slack, "C1")
    assert excinfo.value.error == "channel_not_found"
    assert str(excinfo.value) == "slack history fetch failed: channel_not_found"


def test_failure_on_second_page_keeps_earlier_records(engine, fake_slack):
    pages = chain_pages([_history_message(recent_ts())], [])
    pages[1] = SlackPage(ok=False, error="ratelimited")
    fake_slack.history["C1"] = pages

    with pytest.raises(SlackHistoryError):
        run_backfill(engine, fake_slack, "C1")
    assert _count(engine, RequestRecord) == 1


def test_multi_channel_backfill_collects_failures(engine, fake_slack, history):
    fake_slack.history["C2"] = [SlackPage(ok=False, error="not_in_channel")]

    result = backfill_channels(engine, fake_slack, ["C1", "C2"])

    assert result["channels"] == 2
    assert result["failures"] == [
        {"channelId": "C2", "error": "slack history fetch failed: not_in_channel"}
    ]
    assert result["totalScannedMessages"] == 4
    assert result["totalCreatedEvents"] == 1
    assert result["totalCreatedRequests"] == 2


def test_configured_channels_requires_channel_ids(engine, fake_slack):
    with pytest.raises(ConfigurationError, match="missing CHANNEL_IDS env var"):
        backfill_configured_channels(engine, fake_slack, Settings())
    with pytest.raises(ConfigurationError, match="CHANNEL_IDS env var is empty"):
        backfill_configured_channels(engine, fake_slack, Settings(channel_ids_raw=" , "))
