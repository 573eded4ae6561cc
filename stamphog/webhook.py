"""webhook.py – Slack Events API receiver

``POST /slack/stamps`` processes one delivery at a time:

1. parse the JSON body (400 on failure);
2. answer the ``url_verification`` handshake without checking signatures;
3. verify the Slack signature (401, or 500 when the secret is unset);
4. narrow the event and dispatch on its type.

Business-rule rejections (untracked emoji, no PR link, message subtypes) are
``200`` responses carrying ``ignored: true`` and a machine-readable
``reason`` so Slack never retries them.  Only missing configuration, bad
signatures and structurally incomplete payloads produce error statuses.
"""

from __future__ import annotations

import json
from typing import Optional

from flask import Blueprint, Response, current_app, jsonify, request

from stamphog import cloud_logging as logging
from stamphog import current_services, limiter
from stamphog.database.mutations import ingest_request, ingest_stamp, remove_stamp
from stamphog.dedupe import (
    build_reaction_dedupe_key,
    build_request_dedupe_key,
    reaction_source,
)
from stamphog.errors import ConfigurationError, MalformedEventError
from stamphog.events import (
    MessageEvent,
    ReactionEvent,
    UnhandledEvent,
    parse_event,
    to_occurred_at_ms,
)
from stamphog.inputs.slack import UserResolver
from stamphog.qualification import (
    extract_qualifying_url,
    find_qualifying_url_with_thread_fallback,
    needs_thread_fallback,
    normalize_emoji,
    tracked_emoji_set,
)
from stamphog.security import verify_slack_signature

webhook_bp = Blueprint("webhook", __name__)


def _ignored(reason: str):
    logging.log_text(f"Slack event ignored: {reason}", severity="DEBUG")
    return jsonify({"ok": True, "ignored": True, "reason": reason}), 200


def _text(message: str, status: int) -> Response:
    return Response(message, status=status, mimetype="text/plain")


@webhook_bp.errorhandler(MalformedEventError)
def _malformed(error: MalformedEventError):
    logging.log_text(f"Rejected Slack event: {error}", severity="WARNING")
    return _text(str(error), 400)


@webhook_bp.errorhandler(ConfigurationError)
def _misconfigured(error: ConfigurationError):
    logging.log_text(f"Webhook configuration error: {error}", severity="ERROR")
    return _text(str(error), 500)


def _find_url(gateway, channel_id: str, message_ts: str, text: Optional[str], include_thread: bool):
    if not include_thread:
        return extract_qualifying_url(text)
    return find_qualifying_url_with_thread_fallback(
        message_text=text,
        include_thread_fallback=True,
        fetch_replies_page=lambda cursor: gateway.replies_page(
            channel_id, message_ts, cursor=cursor
        ),
    )


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


def handle_message_event(event: MessageEvent):
    if event.subtype:
        return _ignored("message_subtype")

    if not (event.user and event.channel and event.ts):
        raise MalformedEventError("missing message event fields")

    services = current_services()
    gateway = services.slack

    qualifying_url = _find_url(
        gateway,
        event.channel,
        event.ts,
        event.text,
        needs_thread_fallback(event.thread_ts, event.reply_count),
    )
    if not qualifying_url:
        return _ignored("missing_qualifying_review_url")

    requester = UserResolver(gateway)(event.user)
    result = ingest_request(
        services.engine,
        requester_id=event.user,
        channel_id=event.channel,
        message_ref=event.ts,
        occurred_at=to_occurred_at_ms(event.event_ts or event.ts),
        pr_url=qualifying_url,
        dedupe_key=build_request_dedupe_key(event.channel, event.ts),
        display_name=requester.display_name,
        image_url=requester.image_url,
    )
    logging.log_text(
        f"Request {event.channel}/{event.ts} ingested (duplicate={result.duplicate}).",
        severity="INFO",
    )
    return jsonify({"ok": True, "duplicateSkipped": result.duplicate}), 200


def handle_reaction_event(event: ReactionEvent):
    services = current_services()
    reaction = normalize_emoji(event.reaction)
    if reaction not in tracked_emoji_set(services.settings.stamp_emojis):
        return _ignored("emoji_not_tracked")

    giver_id, channel_id, message_ts = event.user, event.channel, event.ts
    if not (giver_id and channel_id and message_ts):
        raise MalformedEventError("missing reaction event fields")

    gateway = services.slack
    message = gateway.message_at(channel_id, message_ts)
    requester_id = (message or {}).get("user")
    if not requester_id:
        raise MalformedEventError("could not resolve message author")

    qualifying_url = _find_url(
        gateway,
        channel_id,
        message_ts,
        message.get("text"),
        needs_thread_fallback(message.get("thread_ts"), message.get("reply_count")),
    )
    if not qualifying_url:
        return _ignored("missing_qualifying_review_url")

    resolve = UserResolver(gateway)
    requester = resolve(requester_id)
    ingest_request(
        services.engine,
        requester_id=requester_id,
        channel_id=channel_id,
        message_ref=message_ts,
        occurred_at=to_occurred_at_ms(message_ts),
        pr_url=qualifying_url,
        dedupe_key=build_request_dedupe_key(channel_id, message_ts),
        display_name=requester.display_name,
        image_url=requester.image_url,
    )

    dedupe_key = build_reaction_dedupe_key(channel_id, message_ts, reaction, giver_id)
    source = reaction_source(reaction)

    if not event.added:
        removal = remove_stamp(
            services.engine,
            dedupe_key=dedupe_key,
            giver_id=giver_id,
            requester_id=requester_id,
            reaction=reaction,
            source=source,
            channel_id=channel_id,
        )
        logging.log_text(
            f"Stamp {dedupe_key} removed ({removal.removed_count}, {removal.strategy}).",
            severity="INFO",
        )
        return (
            jsonify({"ok": True, "removed": removal.removed_count, "strategy": removal.strategy}),
            200,
        )

    if giver_id == requester_id:
        return _ignored("self_reaction")

    giver = resolve(giver_id)
    result = ingest_stamp(
        services.engine,
        giver_id=giver_id,
        requester_id=requester_id,
        reaction=reaction,
        source=source,
        channel_id=channel_id,
        occurred_at=to_occurred_at_ms(event.event_ts),
        pr_url=qualifying_url,
        dedupe_key=dedupe_key,
        giver_display_name=giver.display_name,
        giver_image_url=giver.image_url,
        requester_display_name=requester.display_name,
        requester_image_url=requester.image_url,
    )
    logging.log_text(
        f"Stamp {dedupe_key} ingested (duplicate={result.duplicate}).", severity="INFO"
    )
    return jsonify({"ok": True, "duplicateSkipped": result.duplicate}), 200


# ---------------------------------------------------------------------------
# Route
# ---------------------------------------------------------------------------


@webhook_bp.route("/slack/stamps", methods=["POST"])
@limiter.exempt
def slack_events():
    raw_body = request.get_data(cache=True)
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return _text("invalid json body", 400)
    if not isinstance(payload, dict):
        return _text("invalid json body", 400)

    if payload.get("type") == "url_verification" and payload.get("challenge"):
        return jsonify({"challenge": payload["challenge"]}), 200

    failure = verify_slack_signature(
        request.headers, raw_body, current_app.config.get("SLACK_SIGNING_SECRET")
    )
    if failure is not None:
        logging.log_text(
            f"Slack signature check failed: {failure.reason}",
            severity="ERROR" if failure.status >= 500 else "WARNING",
        )
        return _text(failure.reason, failure.status)

    if payload.get("type") != "event_callback":
        return _ignored("not_event_callback")

    event = parse_event(payload.get("event"))
    if isinstance(event, MessageEvent):
        return handle_message_event(event)
    if isinstance(event, ReactionEvent):
        return handle_reaction_event(event)
    if isinstance(event, UnhandledEvent):
        return _ignored("event_not_handled")
    raise TypeError(f"unhandled Slack event variant: {type(event).__name__}")
