"""database.mutations
======================

The only writers of the stamp store.  Each public function runs in its own
transaction (:pyfunc:`stamphog.helper_functions.session_scope`) and is safe to
call concurrently for the same dedupe key: the unique index on
``dedupe_key`` lets exactly one insert win, and the loser's
``IntegrityError`` is caught inside a SAVEPOINT and reported as a duplicate.

Every ingest also upserts the referenced actor profiles, whether or not the
primary record turns out to be new.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stamphog import cloud_logging as logging
from stamphog.database.models import Actor, RequestRecord, StampEvent
from stamphog.dedupe import default_stamp_source
from stamphog.helper_functions import session_scope

__all__ = [
    "IngestResult",
    "RemovalResult",
    "upsert_actor_profile",
    "ingest_request",
    "ingest_stamp",
    "remove_stamp",
]

STRATEGY_EXACT = "exact"
STRATEGY_FALLBACK = "fallback"


@dataclass(frozen=True)
class IngestResult:
    duplicate: bool
    id: int


@dataclass(frozen=True)
class RemovalResult:
    removed_count: int
    strategy: str


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Actor profiles
# ---------------------------------------------------------------------------


def _find_actor(session: Session, actor_id: str) -> Optional[Actor]:
    return session.scalars(select(Actor).where(Actor.actor_id == actor_id)).first()


def _patch_actor(actor: Actor, display_name: Optional[str], image_url: Optional[str]) -> None:
    actor.display_name = display_name or actor.display_name
    actor.image_url = image_url or actor.image_url
    actor.updated_at = _now_ms()


def upsert_actor_profile(
    session: Session,
    actor_id: str,
    display_name: Optional[str] = None,
    image_url: Optional[str] = None,
) -> Actor:
    """Insert or refresh the cached profile for *actor_id*.

    Absent name/avatar values keep what is already stored; a brand new profile
    without a name displays the raw id.
    """
    existing = _find_actor(session, actor_id)
    if existing is not None:
        _patch_actor(existing, display_name, image_url)
        return existing

    actor = Actor(
        actor_id=actor_id,
        display_name=display_name or actor_id,
        image_url=image_url,
        updated_at=_now_ms(),
    )
    try:
        with session.begin_nested():
            session.add(actor)
    except IntegrityError:
        # Another writer created the profile first.
        existing = _find_actor(session, actor_id)
        if existing is None:
            raise
        _patch_actor(existing, display_name, image_url)
        return existing
    return actor


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def _find_request(session: Session, dedupe_key: str) -> Optional[RequestRecord]:
    return session.scalars(
        select(RequestRecord).where(RequestRecord.dedupe_key == dedupe_key)
    ).first()


def ingest_request(
    engine: Engine,
    *,
    requester_id: str,
    channel_id: str,
    message_ref: str,
    pr_url: str,
    dedupe_key: str,
    display_name: Optional[str] = None,
    image_url: Optional[str] = None,
    occurred_at: Optional[int] = None,
) -> IngestResult:
    """Record a qualifying request message, once per dedupe key.

    A repeated delivery only refreshes ``pr_url`` (the message may have been
    edited); ``occurred_at`` and every other column stay untouched.
    """
    with session_scope(engine) as session:
        upsert_actor_profile(session, requester_id, display_name, image_url)

        existing = _find_request(session, dedupe_key)
        if existing is None:
            record = RequestRecord(
                requester_id=requester_id,
                channel_id=channel_id,
                message_ref=message_ref,
                occurred_at=occurred_at if occurred_at is not None else _now_ms(),
                pr_url=pr_url,
                dedupe_key=dedupe_key,
            )
            try:
                with session.begin_nested():
                    session.add(record)
                return IngestResult(duplicate=False, id=record.id)
            except IntegrityError:
                existing = _find_request(session, dedupe_key)
                if existing is None:
                    raise
                logging.log_text(
                    f"Concurrent insert detected for {dedupe_key}; treating as duplicate.",
                    severity="INFO",
                )

        existing.pr_url = pr_url
        return IngestResult(duplicate=True, id=existing.id)


# ---------------------------------------------------------------------------
# Stamp events
# ---------------------------------------------------------------------------


def _find_stamp(session: Session, dedupe_key: str) -> Optional[StampEvent]:
    return session.scalars(
        select(StampEvent).where(StampEvent.dedupe_key == dedupe_key)
    ).first()


def ingest_stamp(
    engine: Engine,
    *,
    giver_id: str,
    requester_id: str,
    reaction: str,
    channel_id: str,
    dedupe_key: str,
    source: Optional[str] = None,
    occurred_at: Optional[int] = None,
    pr_url: Optional[str] = None,
    giver_display_name: Optional[str] = None,
    giver_image_url: Optional[str] = None,
    requester_display_name: Optional[str] = None,
    requester_image_url: Optional[str] = None,
) -> IngestResult:
    """Record one reviewer's stamp, once per dedupe key.

    A duplicate delivery leaves the stamp untouched; only the cached actor
    profiles are refreshed.
    """
    with session_scope(engine) as session:
        upsert_actor_profile(session, giver_id, giver_display_name, giver_image_url)
        upsert_actor_profile(
            session, requester_id, requester_display_name, requester_image_url
        )

        existing = _find_stamp(session, dedupe_key)
        if existing is not None:
            return IngestResult(duplicate=True, id=existing.id)

        event = StampEvent(
            giver_id=giver_id,
            requester_id=requester_id,
            stamp_count=1,
            occurred_at=occurred_at if occurred_at is not None else _now_ms(),
            source=source or default_stamp_source(reaction),
            channel_id=channel_id,
            pr_url=pr_url,
            dedupe_key=dedupe_key,
        )
        try:
            with session.begin_nested():
                session.add(event)
        except IntegrityError:
            existing = _find_stamp(session, dedupe_key)
            if existing is None:
                raise
            logging.log_text(
                f"Concurrent insert detected for {dedupe_key}; treating as duplicate.",
                severity="INFO",
            )
            return IngestResult(duplicate=True, id=existing.id)
        return IngestResult(duplicate=False, id=event.id)


def remove_stamp(
    engine: Engine,
    *,
    dedupe_key: str,
    giver_id: str,
    requester_id: str,
    reaction: str,
    channel_id: str,
    source: Optional[str] = None,
) -> RemovalResult:
    """Delete the stamp a ``reaction_removed`` event refers to.

    Exact dedupe-key matches are removed first.  When there are none (a stamp
    stored without a key, or a removal that overtook its add) every stamp
    matching giver, requester, channel and source is removed instead.  Zero
    deletions is a valid outcome, not an error.
    """
    with session_scope(engine) as session:
        exact = session.execute(
            delete(StampEvent).where(StampEvent.dedupe_key == dedupe_key)
        ).rowcount
        if exact:
            return RemovalResult(removed_count=exact, strategy=STRATEGY_EXACT)

        event_source = source or default_stamp_source(reaction)
        fallback = session.execute(
            delete(StampEvent).where(
                StampEvent.giver_id == giver_id,
                StampEvent.requester_id == requester_id,
                StampEvent.channel_id == channel_id,
                StampEvent.source == event_source,
            )
        ).rowcount
        return RemovalResult(removed_count=fallback or 0, strategy=STRATEGY_FALLBACK)
