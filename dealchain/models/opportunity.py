"""
Opportunity — a published intent to request or offer a service.

Lifecycle:
    DRAFT ──▶ PUBLISHED ──▶ CLOSED
      └────────────────────▶ CLOSED

Monotonic: no PUBLISHED → DRAFT and no republish after CLOSED.
Once any Proposal against it reaches FINAL_ACCEPTED the opportunity is
soft-locked (``locked_at``): descriptive fields can no longer change.
"""

from enum import Enum

from dealchain.models import db
from dealchain.models.base import AggregateModel, check_in, iso


class OpportunityIntent(str, Enum):
    REQUEST_SERVICE = "REQUEST_SERVICE"
    OFFER_SERVICE = "OFFER_SERVICE"
    BOTH = "BOTH"


class OpportunityStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    CLOSED = "CLOSED"


class PaymentType(str, Enum):
    CASH = "CASH"
    BARTER = "BARTER"
    HYBRID = "HYBRID"


INTENTS = tuple(i.value for i in OpportunityIntent)
OPPORTUNITY_STATUSES = tuple(s.value for s in OpportunityStatus)
PAYMENT_TYPES = tuple(p.value for p in PaymentType)


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

OPPORTUNITY_TRANSITIONS = {
    "DRAFT":     ["PUBLISHED", "CLOSED"],
    "PUBLISHED": ["CLOSED"],
    "CLOSED":    [],
}


def validate_opportunity_transition(old_status, new_status):
    """Return True if Opportunity status transition is valid."""
    return new_status in OPPORTUNITY_TRANSITIONS.get(old_status, [])


class Opportunity(AggregateModel):
    """
    A collaboration opportunity created by a party.

    scope_type/scope_id default to the opportunity itself (OPPORTUNITY, id)
    when the opportunity is not attached to a registered project scope.
    """

    __tablename__ = "opportunities"
    __table_args__ = (
        db.CheckConstraint(check_in("status", OPPORTUNITY_STATUSES), name="ck_opportunities_status"),
        db.CheckConstraint(check_in("intent", INTENTS), name="ck_opportunities_intent"),
        db.Index("idx_opportunities_status_intent", "status", "intent"),
    )

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    intent = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=OpportunityStatus.DRAFT.value)

    scope_type = db.Column(db.String(30), nullable=False)
    scope_id = db.Column(db.String(64), nullable=False, index=True)

    location = db.Column(db.JSON, nullable=True, comment="{country, region, city, ...}")
    payment_terms = db.Column(db.JSON, nullable=True, comment="Preferred terms: {type: CASH|BARTER|HYBRID, ...}")
    skills_tags = db.Column(db.JSON, nullable=False, default=list)
    service_items = db.Column(db.JSON, nullable=False, default=list)

    creator_party_id = db.Column(db.String(64), nullable=False, index=True)

    # Soft lock recorded by the first proposal that reaches FINAL_ACCEPTED
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_by_proposal_id = db.Column(db.String(36), nullable=True)

    published_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    close_reason = db.Column(db.Text, nullable=True)

    proposals = db.relationship("Proposal", back_populates="opportunity", lazy="dynamic")

    @property
    def is_locked(self):
        return self.locked_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "intent": self.intent,
            "status": self.status,
            "scopeType": self.scope_type,
            "scopeId": self.scope_id,
            "location": self.location,
            "paymentTerms": self.payment_terms,
            "skillsTags": list(self.skills_tags or []),
            "serviceItems": list(self.service_items or []),
            "creatorPartyId": self.creator_party_id,
            "lockedAt": iso(self.locked_at),
            "lockedByProposalId": self.locked_by_proposal_id,
            "publishedAt": iso(self.published_at),
            "closedAt": iso(self.closed_at),
            "closeReason": self.close_reason,
            "generation": self.generation,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Opportunity {self.id} {self.status}>"
