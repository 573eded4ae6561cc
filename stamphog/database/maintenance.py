"""database.maintenance
========================

Administrative jobs that write to the store outside the live pipeline:

* :pyfunc:`prune_retention_window` – drop records older than the retention
  window, then garbage-collect actor profiles nobody references any more.
* :pyfunc:`migrate_legacy_stamp_rows` – one-time import of the older
  embedded-display-name layout into the normalized actor-centric schema.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine

from stamphog import cloud_logging as logging
from stamphog.config import DATA_RETENTION_DAYS
from stamphog.database.models import Actor, RequestRecord, StampEvent
from stamphog.database.mutations import upsert_actor_profile
from stamphog.dedupe import default_stamp_source
from stamphog.helper_functions import session_scope

DAY_MS = 24 * 60 * 60 * 1000


def prune_retention_window(
    engine: Engine,
    *,
    retention_days: int = DATA_RETENTION_DAYS,
    now_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Delete stale records and orphaned actor profiles.

    Runs as two explicit phases inside one transaction: first every request
    and stamp with ``occurred_at`` before the cutoff is deleted, then the set of
    actor ids still referenced by the *remaining* records is recomputed and
    every profile outside it is deleted.
    """
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    cutoff_ms = now_ms - retention_days * DAY_MS

    with session_scope(engine) as session:
        # Phase 1 – stale records.
        deleted_requests = session.execute(
            delete(RequestRecord).where(RequestRecord.occurred_at < cutoff_ms)
        ).rowcount or 0
        deleted_events = session.execute(
            delete(StampEvent).where(StampEvent.occurred_at < cutoff_ms)
        ).rowcount or 0

        # Phase 2 – profiles referenced by nothing that survived phase 1.
        referenced: Set[str] = set(session.scalars(select(RequestRecord.requester_id)))
        for giver_id, requester_id in session.execute(
            select(StampEvent.giver_id, StampEvent.requester_id)
        ):
            referenced.update((giver_id, requester_id))

        orphan_ids = [
            actor_id
            for actor_id in session.scalars(select(Actor.actor_id))
            if actor_id not in referenced
        ]
        if orphan_ids:
            session.execute(delete(Actor).where(Actor.actor_id.in_(orphan_ids)))

        remaining = {
            "requests": session.scalar(select(func.count()).select_from(RequestRecord)),
            "stampEvents": session.scalar(select(func.count()).select_from(StampEvent)),
            "actors": session.scalar(select(func.count()).select_from(Actor)),
        }

    result = {
        "retentionDays": retention_days,
        "cutoffMs": cutoff_ms,
        "deletedRequests": deleted_requests,
        "deletedStampEvents": deleted_events,
        "deletedActors": len(orphan_ids),
        "remaining": remaining,
    }
    logging.log_text(f"Retention prune finished: {result}", severity="INFO")
    return result


def migrate_legacy_stamp_rows(
    engine: Engine, rows: Iterable[Mapping[str, Any]]
) -> Dict[str, int]:
    """
    Import stamp rows from the embedded-display-name layout.

    Each legacy row carries ``giverSlackId`` / ``requesterSlackId`` plus their
    display names and avatars.  Profiles move into ``actors``; the stamp keeps
    only the ids.  Rows whose ``dedupeKey`` already exists are skipped.  Rows
    without a key are imported keyless and can only be removed later through
    the fallback match of :pyfunc:`~stamphog.database.mutations.remove_stamp`.
    """
    imported = skipped = 0
    actors: Set[str] = set()

    with session_scope(engine) as session:
        for row in rows:
            giver_id = row["giverSlackId"]
            requester_id = row["requesterSlackId"]
            upsert_actor_profile(
                session, giver_id, row.get("giverDisplayName"), row.get("giverImageUrl")
            )
            upsert_actor_profile(
                session,
                requester_id,
                row.get("requesterDisplayName"),
                row.get("requesterImageUrl"),
            )
            actors.update((giver_id, requester_id))

            dedupe_key = row.get("dedupeKey") or None
            if dedupe_key is not None and session.scalar(
                select(StampEvent.id).where(StampEvent.dedupe_key == dedupe_key)
            ):
                skipped += 1
                continue

            session.add(
                StampEvent(
                    giver_id=giver_id,
                    requester_id=requester_id,
                    stamp_count=int(row.get("stampCount") or 1),
                    occurred_at=int(row["occurredAt"]),
                    source=row.get("source") or default_stamp_source(row.get("reaction") or "stamp"),
                    channel_id=row.get("channelId"),
                    pr_url=row.get("prUrl"),
                    dedupe_key=dedupe_key,
                )
            )
            session.flush()
            imported += 1

    logging.log_text(
        f"Legacy migration imported {imported} stamps ({skipped} duplicates skipped).",
        severity="INFO",
    )
    return {"imported": imported, "skippedDuplicates": skipped, "actorsTouched": len(actors)}


def prune_data_older_than_retention_window(engine: Engine) -> Dict[str, Any]:
    """Retention sweep with the fixed 90 day window."""
    return prune_retention_window(engine, retention_days=DATA_RETENTION_DAYS)
