"""
Engagement — execution binding of a signed Contract to a concrete scope.

Lifecycle:
    PLANNED ──▶ ACTIVE ──▶ COMPLETED
       │          └──────▶ CANCELLED
       └─────────────────▶ CANCELLED

COMPLETED and CANCELLED are terminal; ACTIVE → PLANNED is not allowed.
ACTIVE requires started_at (DB CHECK).
"""

from enum import Enum

from dealchain.models import db
from dealchain.models.base import AggregateModel, check_in, iso


class EngagementType(str, Enum):
    PROJECT_EXECUTION = "PROJECT_EXECUTION"
    SERVICE_DELIVERY = "SERVICE_DELIVERY"
    ADVISORY = "ADVISORY"


class EngagementStatus(str, Enum):
    PLANNED = "PLANNED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ENGAGEMENT_TYPES = tuple(t.value for t in EngagementType)
ENGAGEMENT_STATUSES = tuple(s.value for s in EngagementStatus)
TERMINAL_ENGAGEMENT_STATUSES = ("COMPLETED", "CANCELLED")

# Contract type → the only engagement type it may spawn
CONTRACT_ENGAGEMENT_TYPES = {
    "PROJECT_CONTRACT":      "PROJECT_EXECUTION",
    "MEGA_PROJECT_CONTRACT": "PROJECT_EXECUTION",
    "SUB_CONTRACT":          "PROJECT_EXECUTION",
    "SPV_CONTRACT":          "PROJECT_EXECUTION",
    "JV_CONTRACT":           "PROJECT_EXECUTION",
    "CONSORTIUM_CONTRACT":   "PROJECT_EXECUTION",
    "MULTI_PARTY_CONTRACT":  "PROJECT_EXECUTION",
    "SERVICE_CONTRACT":      "SERVICE_DELIVERY",
    "ADVISORY_CONTRACT":     "ADVISORY",
}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

ENGAGEMENT_TRANSITIONS = {
    "PLANNED":   ["ACTIVE", "CANCELLED"],
    "ACTIVE":    ["COMPLETED", "CANCELLED"],
    "COMPLETED": [],
    "CANCELLED": [],
}


def validate_engagement_transition(old_status, new_status):
    """Return True if Engagement status transition is valid."""
    return new_status in ENGAGEMENT_TRANSITIONS.get(old_status, [])


class Engagement(AggregateModel):
    """Execution of (part of) a contract's scope."""

    __tablename__ = "engagements"
    __table_args__ = (
        db.CheckConstraint(check_in("status", ENGAGEMENT_STATUSES), name="ck_engagements_status"),
        db.CheckConstraint(check_in("engagement_type", ENGAGEMENT_TYPES), name="ck_engagements_type"),
        db.CheckConstraint(
            "status <> 'ACTIVE' OR started_at IS NOT NULL", name="ck_engagements_active_started",
        ),
        db.Index("idx_engagements_contract_status", "contract_id", "status"),
        db.Index("idx_engagements_scope", "assigned_scope_type", "assigned_scope_id"),
    )

    contract_id = db.Column(
        db.String(36), db.ForeignKey("contracts.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    engagement_type = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=EngagementStatus.PLANNED.value)

    assigned_scope_type = db.Column(db.String(30), nullable=False)
    assigned_scope_id = db.Column(db.String(64), nullable=False)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    contract = db.relationship("Contract", back_populates="engagements")
    milestones = db.relationship(
        "Milestone", back_populates="engagement", lazy="dynamic",
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_ENGAGEMENT_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "contractId": self.contract_id,
            "engagementType": self.engagement_type,
            "status": self.status,
            "assignedToScopeType": self.assigned_scope_type,
            "assignedToScopeId": self.assigned_scope_id,
            "startedAt": iso(self.started_at),
            "completedAt": iso(self.completed_at),
            "cancelledAt": iso(self.cancelled_at),
            "cancelReason": self.cancel_reason,
            "generation": self.generation,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Engagement {self.id} {self.status}>"
