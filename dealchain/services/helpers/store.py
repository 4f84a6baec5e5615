"""
Aggregate store helpers — the single read-modify-write discipline.

Every mutating service operation follows the same shape:

    with transaction("Proposal"):
        proposal = load_for_update(Proposal, proposal_id)
        check_generation(proposal, expected_generation)
        ...validate, then mutate...
    flush_outbox()

Why this module exists:
  Concurrent negotiating parties hit the same aggregates. Three layers keep
  them from clobbering each other:
  1. ``load_for_update`` takes a row lock (SELECT ... FOR UPDATE) where the
     backend supports it, so cross-entity checks see a stable snapshot.
  2. ``generation`` (version_id_col) makes a lost race fail at flush with
     StaleDataError instead of silently overwriting.
  3. ``transaction`` turns StaleDataError / IntegrityError into a
     retryable StateConflictError after rolling back, and rolls back on
     any other error so no partial write survives.

Usage:
    opp = get_or_raise(Opportunity, opportunity_id)
    node, created = upsert(ScopeNode, "PRJ-1", {"scope_type": "PROJECT"})
"""

import logging
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from dealchain.core.exceptions import NotFoundError, StateConflictError
from dealchain.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def load_for_update(model, pk, label=None):
    """Fetch and row-lock an aggregate for the rest of the transaction.

    ``populate_existing`` refreshes an instance already in the identity map,
    so the caller always validates against the locked row.
    """
    label = label or model.__name__
    if pk is None:
        raise NotFoundError(resource=label, resource_id=pk)
    obj = db.session.execute(
        select(model)
        .where(model.id == pk)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def check_generation(obj, expected_generation, label=None):
    """Raise StateConflictError when the caller's read is stale."""
    if expected_generation is None:
        return
    if obj.generation != expected_generation:
        label = label or type(obj).__name__
        raise StateConflictError(
            f"{label} id={obj.id} was modified concurrently "
            f"(expected generation {expected_generation}, found {obj.generation})",
            current=obj.generation,
        )


@contextmanager
def transaction(label):
    """Commit the session on success; roll back and translate on failure.

    StaleDataError  → StateConflictError (another writer bumped generation)
    IntegrityError  → StateConflictError (unique key taken concurrently)
    anything else   → rolled back and re-raised unchanged
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent update on %s: %s", label, exc)
        raise StateConflictError(f"{label} was modified concurrently; re-read and retry") from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on %s commit: %s", label, exc.orig)
        raise StateConflictError(f"{label} conflicts with a concurrent write; re-read and retry") from exc
    except Exception:
        db.session.rollback()
        raise


def upsert(model, pk, data):
    """Create-or-update by primary key.

    Returns ``(obj, created)``. Does not commit. Updates only touch the
    keys present in ``data``; a concurrent create of the same key surfaces
    as IntegrityError at commit (→ StateConflictError via ``transaction``),
    after which a retry takes the update path.
    """
    obj = db.session.get(model, pk)
    if obj is None:
        obj = model(id=pk, **data)
        db.session.add(obj)
        db.session.flush()
        return obj, True
    for key, value in data.items():
        setattr(obj, key, value)
    return obj, False
