"""Idempotency keys for request and stamp records.

A live webhook and a backfill replay of the same Slack event must produce the
same key, so both paths call these helpers with the raw channel id, the
message ``ts`` string and the normalized reaction name.
"""

from __future__ import annotations


def build_request_dedupe_key(channel_id: str, message_ts: str) -> str:
    return f"request:{channel_id}:{message_ts}"


def build_reaction_dedupe_key(
    channel_id: str, message_ts: str, reaction: str, giver_id: str
) -> str:
    return f"reaction:{channel_id}:{message_ts}:{reaction}:{giver_id}"


def reaction_source(reaction: str) -> str:
    """Source tag recorded on stamps created from a Slack reaction."""
    return f"slack:reaction:{reaction}"


def default_stamp_source(reaction: str) -> str:
    return f"stamp:{reaction}"
