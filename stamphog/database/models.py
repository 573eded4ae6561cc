"""database.models
===================

SQLAlchemy declarative models for the stamp store.  The schema is the
normalized, actor-centric layout: display names and avatars live only in
``actors`` and records reference people by their Slack user id (a soft
reference; there is no foreign key so a record can outlive its profile).

Tables
------
1. actors – Identity cache keyed by Slack user id.
2. requests – One row per qualifying request message (unique dedupe key).
3. stamp_events – One row per reviewer stamp (unique dedupe key when set).

All timestamps are epoch milliseconds.
"""

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_pk_type = BigInteger().with_variant(Integer, "sqlite")


class Actor(Base):
    __tablename__ = "actors"

    id = Column(_pk_type, primary_key=True, autoincrement=True)
    actor_id = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=False)
    image_url = Column(Text)
    updated_at = Column(BigInteger, nullable=False)


class RequestRecord(Base):
    __tablename__ = "requests"

    id = Column(_pk_type, primary_key=True, autoincrement=True)
    requester_id = Column(String, nullable=False)
    channel_id = Column(String, nullable=False)
    message_ref = Column(String, nullable=False)
    occurred_at = Column(BigInteger, nullable=False)
    pr_url = Column(Text, nullable=False)
    dedupe_key = Column(String, nullable=False)

    __table_args__ = (
        Index("uq_requests_dedupe_key", "dedupe_key", unique=True),
        Index("ix_requests_occurred_at", "occurred_at"),
        Index("ix_requests_requester_occurred_at", "requester_id", "occurred_at"),
    )


class StampEvent(Base):
    __tablename__ = "stamp_events"

    id = Column(_pk_type, primary_key=True, autoincrement=True)
    giver_id = Column(String, nullable=False)
    requester_id = Column(String, nullable=False)
    stamp_count = Column(Integer, nullable=False, default=1)
    occurred_at = Column(BigInteger, nullable=False)
    source = Column(String, nullable=False)
    channel_id = Column(String)
    pr_url = Column(Text)
    # NULL for stamps imported from the legacy layout; NULLs never collide.
    dedupe_key = Column(String)

    __table_args__ = (
        Index("uq_stamp_events_dedupe_key", "dedupe_key", unique=True),
        Index("ix_stamp_events_occurred_at", "occurred_at"),
        Index(
            "ix_stamp_events_fallback_match",
            "giver_id",
            "requester_id",
            "channel_id",
            "source",
        ),
    )


def init_db(engine) -> None:
    """Create any missing tables and indexes."""
    Base.metadata.create_all(engine)
