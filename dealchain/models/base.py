"""
Shared model plumbing.

AggregateModel — abstract base for every mutable aggregate
(Opportunity, Proposal, Contract, Engagement, Milestone). Adds:
  - UUID string primary key
  - created_at / updated_at timestamps (UTC)
  - ``generation`` counter used as SQLAlchemy ``version_id_col``

Every UPDATE then carries ``WHERE generation = :read_value``; a writer that
lost the race gets ``StaleDataError`` on flush (see services.helpers.store).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from dealchain.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso(value):
    """Serialize a date/datetime for ``to_dict``; None passes through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


def check_in(column, values):
    """Build a CHECK constraint expression restricting ``column`` to ``values``."""
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class AggregateModel(db.Model):
    """Abstract base for optimistic-concurrency aggregates."""
    __abstract__ = True

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    generation = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Optimistic concurrency counter, bumped on every UPDATE",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    @declared_attr
    def __mapper_args__(cls):
        return {"version_id_col": cls.__table__.c.generation}
