"""api.py – Read API and administrative routes

``api_bp`` serves the leaderboard and recent-activity views consumed by the
web front end.  ``admin_bp`` exposes backfill and retention pruning behind a
bearer token (``ADMIN_TOKEN``); the routes fail closed with a 500 when no
token is configured.
"""

from __future__ import annotations

import hmac
from typing import Optional

from flask import Blueprint, Response, current_app, jsonify, request

from stamphog import cloud_logging as logging
from stamphog import current_services, limiter
from stamphog.backfill import backfill_configured_channels, run_backfill
from stamphog.database.maintenance import prune_data_older_than_retention_window
from stamphog.errors import ConfigurationError, SlackHistoryError
from stamphog.leaderboard import leaderboard, recent_events

api_bp = Blueprint("api", __name__, url_prefix="/api")
admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

ADMIN_RATE_LIMIT = "10 per hour"


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return None


# ---------------------------------------------------------------------------
# Read API
# ---------------------------------------------------------------------------


@api_bp.route("/leaderboard", methods=["GET"])
def get_leaderboard():
    payload = leaderboard(
        current_services().engine,
        window_days=_int_arg("windowDays"),
        limit=_int_arg("limit"),
    )
    return jsonify(payload), 200


@api_bp.route("/recent-events", methods=["GET"])
def get_recent_events():
    return jsonify(recent_events(current_services().engine, limit=_int_arg("limit"))), 200


# ---------------------------------------------------------------------------
# Admin routes
# ---------------------------------------------------------------------------


@admin_bp.before_request
def _require_admin_token():
    expected = current_app.config.get("ADMIN_TOKEN")
    if not expected:
        raise ConfigurationError("missing ADMIN_TOKEN")

    header = request.headers.get("Authorization", "")
    scheme, _, provided = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        provided.strip().encode(), expected.encode()
    ):
        logging.log_text(
            f"Rejected admin call to {request.path} from {request.remote_addr}",
            severity="WARNING",
        )
        return Response("unauthorized", status=401, mimetype="text/plain")
    return None


@admin_bp.errorhandler(ConfigurationError)
def _admin_misconfigured(error: ConfigurationError):
    logging.log_text(f"Admin configuration error: {error}", severity="ERROR")
    return Response(str(error), status=500, mimetype="text/plain")


@admin_bp.errorhandler(SlackHistoryError)
def _admin_history_failed(error: SlackHistoryError):
    return jsonify({"ok": False, "error": error.error, "message": str(error)}), 502


def _bad_request(message: str) -> Response:
    return Response(message, status=400, mimetype="text/plain")


def _max_messages(raw) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(raw)
    value = int(raw)
    if isinstance(raw, float) and value != raw:
        raise ValueError(raw)
    return value


@admin_bp.route("/backfill", methods=["POST"])
@limiter.limit(ADMIN_RATE_LIMIT)
def trigger_backfill():
    body = request.get_json(silent=True)
    if body is None:
        body = {}
    if not isinstance(body, dict):
        return _bad_request("backfill body must be a JSON object")

    try:
        max_messages = _max_messages(body.get("maxMessages"))
    except (TypeError, ValueError, OverflowError):
        return _bad_request("maxMessages must be an integer")

    channel_id = body.get("channelId")
    if channel_id is not None and not isinstance(channel_id, str):
        return _bad_request("channelId must be a string")

    services = current_services()
    options = {
        "oldest_ts": str(body["oldestTs"]) if body.get("oldestTs") else None,
        "max_messages": max_messages,
    }

    if channel_id:
        summary = run_backfill(
            services.engine,
            services.slack,
            channel_id,
            stamp_emojis=services.settings.stamp_emojis,
            **options,
        )
        return jsonify({"ok": True, **summary.to_dict()}), 200

    result = backfill_configured_channels(
        services.engine, services.slack, services.settings, **options
    )
    return jsonify({"ok": True, **result}), 200


@admin_bp.route("/prune", methods=["POST"])
@limiter.limit(ADMIN_RATE_LIMIT)
def trigger_prune():
    result = prune_data_older_than_retention_window(current_services().engine)
    return jsonify({"ok": True, **result}), 200
