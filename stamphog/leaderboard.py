"""leaderboard.py – Read-side aggregations for the web front end

Both views are computed from the persisted records on every call; there is no
materialized state.  Display names come from the ``actors`` cache and fall
back to the raw Slack id when a profile is missing.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine

from stamphog.config import (
    DEFAULT_LEADERBOARD_LIMIT,
    DEFAULT_RECENT_EVENTS_LIMIT,
    MAX_LEADERBOARD_WINDOW_DAYS,
    MAX_RESULTS_LIMIT,
)
from stamphog.helper_functions import run_query

DAY_MS = 24 * 60 * 60 * 1000

_STAMP_COLUMNS = "id, giver_id, requester_id, stamp_count, occurred_at, pr_url"
_REQUEST_COLUMNS = "id, requester_id, occurred_at, pr_url"


def clamp_limit(value: Optional[int], fallback: int) -> int:
    return max(1, min(MAX_RESULTS_LIMIT, int(value if value is not None else fallback)))


def clamp_window_days(window_days: Optional[float]) -> Optional[int]:
    """Whole days in ``1..MAX_LEADERBOARD_WINDOW_DAYS``, or ``None`` for all time."""
    if not (window_days and window_days > 0):
        return None
    return int(min(window_days, MAX_LEADERBOARD_WINDOW_DAYS))


def since_timestamp(window_days: Optional[float], *, now_ms: int) -> Optional[int]:
    days = clamp_window_days(window_days)
    if days is None:
        return None
    return now_ms - days * DAY_MS


def _actor_profiles(engine: Engine) -> Dict[str, Dict[str, Any]]:
    rows = run_query(engine, "SELECT actor_id, display_name, image_url FROM actors")
    return {
        row["actor_id"]: {"displayName": row["display_name"], "imageUrl": row["image_url"]}
        for row in rows
    }


def _profile(profiles: Dict[str, Dict[str, Any]], actor_id: str) -> Dict[str, Any]:
    return profiles.get(actor_id) or {"displayName": actor_id, "imageUrl": None}


def _rows_since(engine: Engine, table: str, columns: str, since: Optional[int]):
    if since is None:
        return run_query(engine, f"SELECT {columns} FROM {table}")
    return run_query(
        engine,
        f"SELECT {columns} FROM {table} WHERE occurred_at >= :since",
        {"since": since},
    )


def leaderboard(
    engine: Engine,
    window_days: Optional[float] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Top stamp givers and requesters, optionally within the last *window_days*."""
    now_ms = int(time.time() * 1000)
    limit = clamp_limit(limit, DEFAULT_LEADERBOARD_LIMIT)
    window_days = clamp_window_days(window_days)
    since = since_timestamp(window_days, now_ms=now_ms)

    stamps = _rows_since(engine, "stamp_events", _STAMP_COLUMNS, since)
    requests = _rows_since(engine, "requests", _REQUEST_COLUMNS, since)
    profiles = _actor_profiles(engine)

    givers: Dict[str, Dict[str, Any]] = {}
    requesters: Dict[str, Dict[str, Any]] = {}

    def requester_entry(actor_id: str) -> Dict[str, Any]:
        if actor_id not in requesters:
            profile = _profile(profiles, actor_id)
            requesters[actor_id] = {
                "actorId": actor_id,
                "displayName": profile["displayName"],
                "imageUrl": profile["imageUrl"],
                "requestsPosted": 0,
                "stampsRequested": 0,
                "approvalsReceived": 0,
            }
        return requesters[actor_id]

    for request in requests:
        requester_entry(request["requester_id"])["requestsPosted"] += 1

    for stamp in stamps:
        giver_id = stamp["giver_id"]
        if giver_id not in givers:
            profile = _profile(profiles, giver_id)
            givers[giver_id] = {
                "actorId": giver_id,
                "displayName": profile["displayName"],
                "imageUrl": profile["imageUrl"],
                "stampsGiven": 0,
                "approvalsGiven": 0,
            }
        givers[giver_id]["stampsGiven"] += int(stamp["stamp_count"])
        givers[giver_id]["approvalsGiven"] += 1

        requester = requester_entry(stamp["requester_id"])
        requester["stampsRequested"] += int(stamp["stamp_count"])
        requester["approvalsReceived"] += 1

    ranked_givers = sorted(
        givers.values(), key=lambda g: (-g["stampsGiven"], -g["approvalsGiven"])
    )
    ranked_requesters = sorted(
        (r for r in requesters.values() if r["stampsRequested"] > 0),
        key=lambda r: (-r["stampsRequested"], -r["approvalsReceived"], -r["requestsPosted"]),
    )

    return {
        "generatedAt": now_ms,
        "windowDays": window_days,
        "totals": {
            "events": len(stamps),
            "stamps": sum(int(stamp["stamp_count"]) for stamp in stamps),
            "requests": len(requests),
        },
        "givers": ranked_givers[:limit],
        "requesters": ranked_requesters[:limit],
    }


def recent_events(engine: Engine, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Newest stamps and requests merged into one timeline, newest first."""
    limit = clamp_limit(limit, DEFAULT_RECENT_EVENTS_LIMIT)
    stamps = run_query(
        engine,
        f"SELECT {_STAMP_COLUMNS} FROM stamp_events ORDER BY occurred_at DESC, id DESC LIMIT :limit",
        {"limit": limit},
    )
    requests = run_query(
        engine,
        f"SELECT {_REQUEST_COLUMNS} FROM requests ORDER BY occurred_at DESC, id DESC LIMIT :limit",
        {"limit": limit},
    )
    profiles = _actor_profiles(engine)

    items: List[Dict[str, Any]] = []
    for stamp in stamps:
        giver = _profile(profiles, stamp["giver_id"])
        requester = _profile(profiles, stamp["requester_id"])
        items.append(
            {
                "id": f"stamp:{stamp['id']}",
                "type": "stamp",
                "occurredAt": int(stamp["occurred_at"]),
                "prUrl": stamp["pr_url"],
                "giverId": stamp["giver_id"],
                "giverDisplayName": giver["displayName"],
                "giverImageUrl": giver["imageUrl"],
                "requesterId": stamp["requester_id"],
                "requesterDisplayName": requester["displayName"],
                "requesterImageUrl": requester["imageUrl"],
            }
        )
    for request in requests:
        requester = _profile(profiles, request["requester_id"])
        items.append(
            {
                "id": f"request:{request['id']}",
                "type": "request",
                "occurredAt": int(request["occurred_at"]),
                "prUrl": request["pr_url"],
                "requesterId": request["requester_id"],
                "requesterDisplayName": requester["displayName"],
                "requesterImageUrl": requester["imageUrl"],
            }
        )

    items.sort(key=lambda item: item["occurredAt"], reverse=True)
    return items[:limit]
