"""
Milestone — a tracked deliverable or checkpoint under an Engagement.

Forward-only, one step at a time:
    PENDING ──▶ IN_PROGRESS ──▶ COMPLETED

contract_id is denormalized from the engagement at creation and checked
against it again on every write.
"""

from enum import Enum

from dealchain.models import db
from dealchain.models.base import AggregateModel, check_in, iso


class MilestoneType(str, Enum):
    DELIVERABLE = "DELIVERABLE"
    MILESTONE = "MILESTONE"


class MilestoneStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


MILESTONE_TYPES = tuple(t.value for t in MilestoneType)
MILESTONE_STATUSES = tuple(s.value for s in MilestoneStatus)


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

MILESTONE_TRANSITIONS = {
    "PENDING":     ["IN_PROGRESS"],
    "IN_PROGRESS": ["COMPLETED"],
    "COMPLETED":   [],
}


def validate_milestone_transition(old_status, new_status):
    """Return True if Milestone status transition is valid."""
    return new_status in MILESTONE_TRANSITIONS.get(old_status, [])


class Milestone(AggregateModel):
    """Deliverable / checkpoint owned by an engagement."""

    __tablename__ = "milestones"
    __table_args__ = (
        db.CheckConstraint(check_in("status", MILESTONE_STATUSES), name="ck_milestones_status"),
        db.CheckConstraint(check_in("milestone_type", MILESTONE_TYPES), name="ck_milestones_type"),
        db.Index("idx_milestones_engagement_status", "engagement_id", "status"),
    )

    engagement_id = db.Column(
        db.String(36), db.ForeignKey("engagements.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    contract_id = db.Column(
        db.String(36), db.ForeignKey("contracts.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    milestone_type = db.Column(db.String(20), nullable=False, default=MilestoneType.DELIVERABLE.value)
    status = db.Column(db.String(20), nullable=False, default=MilestoneStatus.PENDING.value)
    due_date = db.Column(db.Date, nullable=False)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    engagement = db.relationship("Engagement", back_populates="milestones")

    def to_dict(self):
        return {
            "id": self.id,
            "engagementId": self.engagement_id,
            "contractId": self.contract_id,
            "title": self.title,
            "description": self.description,
            "type": self.milestone_type,
            "status": self.status,
            "dueDate": iso(self.due_date),
            "startedAt": iso(self.started_at),
            "completedAt": iso(self.completed_at),
            "generation": self.generation,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Milestone {self.id} {self.status}>"
