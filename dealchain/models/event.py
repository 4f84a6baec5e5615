"""
DomainEvent — transactional outbox for notifications.

A row is written in the same transaction as the state change it
describes, then handed to the dispatcher after commit
(services.notification.flush_outbox). Rows are append-only apart from
the delivery bookkeeping columns.
"""

from enum import Enum

from dealchain.models import db
from dealchain.models.base import _utcnow, _uuid, iso


class EventType(str, Enum):
    PROPOSAL_SUBMITTED = "ProposalSubmitted"
    PROPOSAL_VERSIONED = "ProposalVersioned"
    PROPOSAL_FINAL_ACCEPTED = "ProposalFinalAccepted"
    PROPOSAL_REJECTED = "ProposalRejected"
    CONTRACT_GENERATED = "ContractGenerated"
    CONTRACT_PARTY_CONSENTED = "ContractPartyConsented"
    CONTRACT_SIGNED = "ContractSigned"
    CONTRACT_CANCELLED = "ContractCancelled"
    ENGAGEMENT_STARTED = "EngagementStarted"
    ENGAGEMENT_COMPLETED = "EngagementCompleted"
    MILESTONE_COMPLETED = "MilestoneCompleted"


class DomainEvent(db.Model):
    """One emitted domain event."""

    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("idx_domain_events_pending", "dispatched_at", "occurred_at"),
        db.Index("idx_domain_events_entity", "entity_type", "entity_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_type = db.Column(db.String(50), nullable=False)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # Delivery bookkeeping
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "eventType": self.event_type,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "payload": self.payload,
            "occurredAt": iso(self.occurred_at),
        }

    def __repr__(self):
        return f"<DomainEvent {self.event_type} {self.entity_type}:{self.entity_id}>"
