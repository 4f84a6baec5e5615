"""
Dealchain
Domain event service — transactional outbox + dispatcher hand-off.

Services call ``NotificationService.emit(...)`` inside their transaction;
the DomainEvent row commits or rolls back together with the state change.
After commit they call ``NotificationService.flush_outbox()``, which hands
pending events to the registered dispatcher. Delivery/formatting is the
dispatcher's responsibility; a failing dispatcher leaves the event pending
for the next flush and never rolls back domain state.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from dealchain.models import db
from dealchain.models.event import DomainEvent

logger = logging.getLogger(__name__)


class LoggingDispatcher:
    """Default dispatcher: writes each event to the log."""

    def dispatch(self, event):
        logger.info(
            "Domain event %s for %s %s",
            event["eventType"], event["entityType"], event["entityId"],
            extra={"event_type": event["eventType"]},
        )


class NotificationService:
    """Stateless service class for domain event operations."""

    # ── Emit ──────────────────────────────────────────────────────────────

    @staticmethod
    def emit(event_type, *, entity_type, entity_id, payload=None):
        """
        Stage a domain event in the current transaction.

        Returns:
            The pending DomainEvent (not committed), or None when
            DOMAIN_EVENTS_ENABLED is off.
        """
        if not current_app.config.get("DOMAIN_EVENTS_ENABLED", True):
            return None
        event_type = getattr(event_type, "value", event_type)
        evt = DomainEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=dict(payload or {}),
            occurred_at=datetime.now(timezone.utc),
        )
        db.session.add(evt)
        return evt

    # ── Deliver ───────────────────────────────────────────────────────────

    @staticmethod
    def flush_outbox(limit=100):
        """
        Dispatch pending events, least-tried first, then oldest first.

        Events that keep failing sink behind fresh ones, so a batch of
        undeliverable events never blocks newer ones. After
        OUTBOX_MAX_ATTEMPTS failures an event is dead-lettered: it stays
        undelivered but is no longer retried (see ``list_dead_letters``).

        Returns:
            Number of events delivered in this call.
        """
        dispatcher = current_app.extensions["dealchain"]["dispatcher"]
        max_attempts = current_app.config.get("OUTBOX_MAX_ATTEMPTS", 10)
        pending = db.session.execute(
            select(DomainEvent)
            .where(DomainEvent.dispatched_at.is_(None), DomainEvent.attempts < max_attempts)
            .order_by(DomainEvent.attempts, DomainEvent.occurred_at, DomainEvent.id)
            .limit(limit)
        ).scalars().all()

        delivered = 0
        for evt in pending:
            evt.attempts = (evt.attempts or 0) + 1
            try:
                dispatcher.dispatch(evt.to_dict())
            except Exception as exc:  # collaborator failure: keep pending, retry later
                evt.last_error = str(exc)[:2000]
                logger.exception(
                    "Dispatcher failed for event %s", evt.id,
                    extra={"event_type": evt.event_type},
                )
                if evt.attempts >= max_attempts:
                    logger.warning(
                        "Event %s dead-lettered after %d attempts", evt.id, evt.attempts,
                        extra={"event_type": evt.event_type},
                    )
                continue
            evt.dispatched_at = datetime.now(timezone.utc)
            evt.last_error = None
            delivered += 1

        if pending:
            db.session.commit()
        return delivered

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_entity(entity_type, entity_id):
        """Return all events recorded for an entity, oldest first."""
        return db.session.execute(
            select(DomainEvent)
            .where(DomainEvent.entity_type == entity_type, DomainEvent.entity_id == entity_id)
            .order_by(DomainEvent.occurred_at, DomainEvent.id)
        ).scalars().all()

    @staticmethod
    def pending_count():
        """Return count of events still awaiting delivery (dead letters excluded)."""
        max_attempts = current_app.config.get("OUTBOX_MAX_ATTEMPTS", 10)
        return db.session.query(DomainEvent).filter(
            DomainEvent.dispatched_at.is_(None),
            DomainEvent.attempts < max_attempts,
        ).count()

    @staticmethod
    def list_dead_letters():
        """Return undelivered events that exhausted their retries, oldest first."""
        max_attempts = current_app.config.get("OUTBOX_MAX_ATTEMPTS", 10)
        return db.session.execute(
            select(DomainEvent)
            .where(DomainEvent.dispatched_at.is_(None), DomainEvent.attempts >= max_attempts)
            .order_by(DomainEvent.occurred_at, DomainEvent.id)
        ).scalars().all()
