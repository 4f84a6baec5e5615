"""
Milestone Tracker — Service Layer.

Business logic for:
    - Creating milestones under a non-terminal engagement (contract_id
      denormalized from the engagement)
    - Forward-only advancement PENDING → IN_PROGRESS → COMPLETED, one step
      at a time, only while the engagement is ACTIVE
    - Overdue listing
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from dealchain.core.exceptions import InvalidStateError, PreconditionError, ValidationError
from dealchain.models import db
from dealchain.models.engagement import Engagement, EngagementStatus
from dealchain.models.event import EventType
from dealchain.models.milestone import (
    MILESTONE_STATUSES,
    MILESTONE_TYPES,
    Milestone,
    MilestoneStatus,
    validate_milestone_transition,
)
from dealchain.services.helpers.store import (
    check_generation,
    get_or_raise,
    load_for_update,
    transaction,
)
from dealchain.services.notification import NotificationService
from dealchain.services.terms import parse_date

logger = logging.getLogger(__name__)


def _check_contract_link(milestone, engagement):
    if milestone.contract_id != engagement.contract_id:
        raise ValidationError(
            f"Milestone {milestone.id} references contract {milestone.contract_id}, "
            f"engagement {engagement.id} belongs to {engagement.contract_id}",
            details={"contract_id": "does not match engagement"},
        )


def create(engagement_id, title, type, due_date, *, description="") -> Milestone:
    """
    Create a PENDING milestone.

    Raises:
        ValidationError: missing title, unknown type, bad due date.
        InvalidStateError: engagement COMPLETED or CANCELLED.
    """
    errors = {}
    if not isinstance(title, str) or not title.strip():
        errors["title"] = "required"
    if type not in MILESTONE_TYPES:
        errors["type"] = f"must be one of {', '.join(MILESTONE_TYPES)}"
    if due_date is None or due_date == "":
        errors["due_date"] = "required"
    if errors:
        raise ValidationError("Invalid milestone", details=errors)
    due = parse_date(due_date, "due_date")

    with transaction("Milestone"):
        engagement = load_for_update(Engagement, engagement_id)
        if engagement.is_terminal:
            raise InvalidStateError("Engagement", engagement.status, "add milestones to")
        milestone = Milestone(
            engagement_id=engagement.id,
            contract_id=engagement.contract_id,
            title=title.strip(),
            description=description or "",
            milestone_type=type,
            status=MilestoneStatus.PENDING.value,
            due_date=due,
        )
        db.session.add(milestone)

    logger.info(
        "Milestone created",
        extra={"milestone_id": milestone.id, "engagement_id": engagement_id,
               "to_status": milestone.status},
    )
    return milestone


def advance(milestone_id, new_status, *, expected_generation=None) -> Milestone:
    """
    Move a milestone one step forward.

    Raises:
        InvalidStateError: skip, backward or repeated transition.
        PreconditionError: engagement not ACTIVE.
        ValidationError: unknown status, or contract link drifted.
    """
    new_status = getattr(new_status, "value", new_status)
    if new_status not in MILESTONE_STATUSES:
        raise ValidationError(
            f"Invalid milestone status: {new_status}",
            details={"status": f"must be one of {', '.join(MILESTONE_STATUSES)}"},
        )

    with transaction("Milestone"):
        milestone = load_for_update(Milestone, milestone_id)
        check_generation(milestone, expected_generation)
        engagement = load_for_update(Engagement, milestone.engagement_id)
        _check_contract_link(milestone, engagement)
        if not validate_milestone_transition(milestone.status, new_status):
            raise InvalidStateError("Milestone", milestone.status, f"move to {new_status}")
        if engagement.status != EngagementStatus.ACTIVE.value:
            raise PreconditionError(
                f"Engagement {engagement.id} is {engagement.status}; milestones advance only while ACTIVE"
            )

        old = milestone.status
        now = datetime.now(timezone.utc)
        milestone.status = new_status
        if new_status == MilestoneStatus.IN_PROGRESS.value:
            milestone.started_at = now
        elif new_status == MilestoneStatus.COMPLETED.value:
            milestone.completed_at = now
            NotificationService.emit(
                EventType.MILESTONE_COMPLETED,
                entity_type="Milestone",
                entity_id=milestone.id,
                payload={
                    "milestoneId": milestone.id,
                    "engagementId": milestone.engagement_id,
                    "contractId": milestone.contract_id,
                    "completedAt": now.isoformat(),
                },
            )

    logger.info(
        "Milestone advanced",
        extra={"milestone_id": milestone.id, "engagement_id": milestone.engagement_id,
               "from_status": old, "to_status": new_status},
    )
    NotificationService.flush_outbox()
    return milestone


# ── Query ────────────────────────────────────────────────────────────────────


def get(milestone_id) -> Milestone:
    return get_or_raise(Milestone, milestone_id)


def list_for_engagement(engagement_id):
    get_or_raise(Engagement, engagement_id)
    return db.session.execute(
        select(Milestone)
        .where(Milestone.engagement_id == engagement_id)
        .order_by(Milestone.due_date, Milestone.created_at, Milestone.id)
    ).scalars().all()


def list_overdue(as_of=None, *, contract_id=None):
    """Milestones past their due date and not COMPLETED, oldest due first."""
    as_of = parse_date(as_of, "as_of") or datetime.now(timezone.utc).date()
    stmt = select(Milestone).where(
        Milestone.status != MilestoneStatus.COMPLETED.value,
        Milestone.due_date < as_of,
    )
    if contract_id:
        stmt = stmt.where(Milestone.contract_id == contract_id)
    return db.session.execute(stmt.order_by(Milestone.due_date, Milestone.id)).scalars().all()
