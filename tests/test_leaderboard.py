"""Tests for `stamphog.leaderboard` and the read API routes."""

from __future__ import annotations

import time

import pytest

from stamphog.database.mutations import ingest_request, ingest_stamp
from stamphog.leaderboard import (
    clamp_limit,
    clamp_window_days,
    leaderboard,
    recent_events,
    since_timestamp,
)

DAY_MS = 24 * 60 * 60 * 1000


def _now_ms():
    return int(time.time() * 1000)


def _seed(engine):
    now = _now_ms()
    ingest_request(
        engine,
        requester_id="UREQ",
        channel_id="C1",
        message_ref="1.0",
        occurred_at=now - 40 * DAY_MS,
        pr_url="https://github.com/acme/w/pull/1",
        dedupe_key="request:C1:1.0",
        display_name="Requester",
    )
    ingest_request(
        engine,
        requester_id="UOTHER",
        channel_id="C1",
        message_ref="2.0",
        occurred_at=now - 2 * DAY_MS,
        pr_url="https://github.com/acme/w/pull/2",
        dedupe_key="request:C1:2.0",
    )
    stamps = [
        ("UGIVE", "UREQ", now - 39 * DAY_MS, "a"),
        ("UGIVE", "UREQ", now - DAY_MS, "b"),
        ("UTHIRD", "UREQ", now - DAY_MS + 1, "c"),
    ]
    for giver, requester, occurred_at, suffix in stamps:
        ingest_stamp(
            engine,
            giver_id=giver,
            requester_id=requester,
            reaction="stamp",
            channel_id="C1",
            occurred_at=occurred_at,
            pr_url="https://github.com/acme/w/pull/1",
            dedupe_key=f"reaction:C1:1.0:stamp:{giver}:{suffix}",
            giver_display_name="Giver" if giver == "UGIVE" else None,
        )


def test_clamp_limit_and_window():
    assert clamp_limit(None, 20) == 20
    assert clamp_limit(0, 20) == 1
    assert clamp_limit(500, 20) == 100
    assert since_timestamp(None, now_ms=1000) is None
    assert since_timestamp(0, now_ms=1000) is None
    assert since_timestamp(1, now_ms=DAY_MS + 5) == 5
    assert clamp_window_days(float("nan")) is None
    assert clamp_window_days(float("inf")) == 3650
    assert clamp_window_days(10**400) == 3650
    assert since_timestamp(10**400, now_ms=4000 * DAY_MS) == 350 * DAY_MS


def test_leaderboard_all_time(engine):
    _seed(engine)
    board = leaderboard(engine)

    assert board["windowDays"] is None
    assert board["totals"] == {"events": 3, "stamps": 3, "requests": 2}
    assert [g["actorId"] for g in board["givers"]] == ["UGIVE", "UTHIRD"]
    assert board["givers"][0] == {
        "actorId": "UGIVE",
        "displayName": "Giver",
        "imageUrl": None,
        "stampsGiven": 2,
        "approvalsGiven": 2,
    }
    # UOTHER posted a request but received no stamps.
    assert [r["actorId"] for r in board["requesters"]] == ["UREQ"]
    assert board["requesters"][0]["requestsPosted"] == 1
    assert board["requesters"][0]["stampsRequested"] == 3


def test_leaderboard_window_and_limit(engine):
    _seed(engine)
    board = leaderboard(engine, window_days=30, limit=1)

    assert board["totals"] == {"events": 2, "stamps": 2, "requests": 1}
    assert len(board["givers"]) == 1
    assert board["requesters"][0]["requestsPosted"] == 0


def test_missing_profile_displays_raw_id(engine):
    _seed(engine)
    board = leaderboard(engine)
    third = next(g for g in board["givers"] if g["actorId"] == "UTHIRD")
    assert third["displayName"] == "UTHIRD"


def test_recent_events_merged_newest_first(engine):
    _seed(engine)
    items = recent_events(engine, limit=3)

    assert [item["type"] for item in items] == ["stamp", "stamp", "request"]
    assert items[0]["giverId"] == "UTHIRD"
    assert items[0]["id"].startswith("stamp:")
    assert items[2]["id"].startswith("request:")
    assert items[2]["requesterId"] == "UOTHER"
    assert items[0]["occurredAt"] >= items[1]["occurredAt"] >= items[2]["occurredAt"]


def test_recent_events_on_empty_store(engine):
    assert recent_events(engine) == []


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("query", ["", "?windowDays=30&limit=5", "?limit=abc"])
def test_leaderboard_route(client, engine, query):
    _seed(engine)
    response = client.get(f"/api/leaderboard{query}")
    assert response.status_code == 200
    assert set(response.get_json()) == {"generatedAt", "windowDays", "totals", "givers", "requesters"}


@pytest.mark.parametrize(
    "window, expected",
    [("1e400", None), ("inf", None), ("nan", None), ("1e300", 3650), ("-5", None)],
)
def test_leaderboard_route_tolerates_extreme_windows(client, engine, window, expected):
    _seed(engine)
    response = client.get(f"/api/leaderboard?windowDays={window}&limit=1e400")
    assert response.status_code == 200
    assert response.get_json()["windowDays"] == expected


def test_recent_events_route(client, engine):
    _seed(engine)
    response = client.get("/api/recent-events?limit=2")
    assert response.status_code == 200
    assert len(response.get_json()) == 2


def test_health_check(client):
    assert client.get("/").get_json() == {"status": "ok"}
