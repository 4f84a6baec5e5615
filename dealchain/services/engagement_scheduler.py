"""
Engagement Scheduler — Service Layer.

Business logic for:
    - Binding a SIGNED contract to an execution scope (create / reassign_scope)
    - Lifecycle transitions: start, complete, cancel (see ENGAGEMENT_TRANSITIONS)
    - Progress roll-up from milestones
    - Listing by contract or by assigned scope

Guards:
    - The contract must be SIGNED when the engagement is created, started
      or cancelled; it is row-locked for the check. An engagement therefore
      never leaves PLANNED under a contract that is not SIGNED.
    - The assigned scope must be the contract scope or a registered
      descendant of it (scope_registry.validate_within).
    - The engagement type must match the contract type
      (CONTRACT_ENGAGEMENT_TYPES).
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from dealchain.core.exceptions import InvalidStateError, PreconditionError, ValidationError
from dealchain.models import db
from dealchain.models.base import as_utc
from dealchain.models.contract import Contract, ContractStatus
from dealchain.models.engagement import (
    CONTRACT_ENGAGEMENT_TYPES,
    ENGAGEMENT_TYPES,
    Engagement,
    EngagementStatus,
    validate_engagement_transition,
)
from dealchain.models.event import EventType
from dealchain.models.milestone import Milestone, MilestoneStatus
from dealchain.services import scope_registry
from dealchain.services.helpers.store import (
    check_generation,
    get_or_raise,
    load_for_update,
    transaction,
)
from dealchain.services.notification import NotificationService
from dealchain.services.terms import parse_date

logger = logging.getLogger(__name__)


def _require_signed(contract, action):
    if contract.status != ContractStatus.SIGNED.value:
        raise PreconditionError(
            f"Contract {contract.id} is {contract.status}; cannot {action} until it is SIGNED"
        )


def _transition(engagement, new_status, action):
    if not validate_engagement_transition(engagement.status, new_status):
        raise InvalidStateError("Engagement", engagement.status, action)
    old = engagement.status
    engagement.status = new_status
    return old


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create(contract_id, scope_type, scope_id, engagement_type) -> Engagement:
    """
    Create a PLANNED engagement for a SIGNED contract.

    Raises:
        PreconditionError: contract not SIGNED.
        ValidationError: scope outside the contract scope, or engagement
            type not allowed for the contract type.
    """
    if engagement_type not in ENGAGEMENT_TYPES:
        raise ValidationError(
            f"Invalid engagement type: {engagement_type}",
            details={"engagement_type": f"must be one of {', '.join(ENGAGEMENT_TYPES)}"},
        )

    with transaction("Engagement"):
        contract = load_for_update(Contract, contract_id)
        _require_signed(contract, "create engagements")
        expected_type = CONTRACT_ENGAGEMENT_TYPES.get(contract.contract_type)
        if engagement_type != expected_type:
            raise ValidationError(
                f"{contract.contract_type} requires {expected_type} engagements",
                details={"engagement_type": f"must be {expected_type}"},
            )
        scope_registry.validate_within(scope_type, scope_id, contract.scope_type, contract.scope_id)

        engagement = Engagement(
            contract_id=contract.id,
            engagement_type=engagement_type,
            status=EngagementStatus.PLANNED.value,
            assigned_scope_type=scope_type,
            assigned_scope_id=scope_id,
        )
        db.session.add(engagement)

    logger.info(
        "Engagement created",
        extra={"engagement_id": engagement.id, "contract_id": contract_id,
               "scope_id": scope_id, "to_status": engagement.status},
    )
    return engagement


def get(engagement_id) -> Engagement:
    return get_or_raise(Engagement, engagement_id)


def list_for_contract(contract_id, status=None):
    get_or_raise(Contract, contract_id)
    stmt = select(Engagement).where(Engagement.contract_id == contract_id)
    if status:
        stmt = stmt.where(Engagement.status == status)
    return db.session.execute(stmt.order_by(Engagement.created_at, Engagement.id)).scalars().all()


def list_for_scope(scope_type, scope_id, status=None):
    """Engagements assigned to exactly this scope."""
    stmt = select(Engagement).where(
        Engagement.assigned_scope_type == scope_type,
        Engagement.assigned_scope_id == scope_id,
    )
    if status:
        stmt = stmt.where(Engagement.status == status)
    return db.session.execute(stmt.order_by(Engagement.created_at, Engagement.id)).scalars().all()


def reassign_scope(engagement_id, scope_type, scope_id, *, expected_generation=None) -> Engagement:
    """Move a PLANNED engagement to another scope inside its contract's scope."""
    with transaction("Engagement"):
        engagement = load_for_update(Engagement, engagement_id)
        check_generation(engagement, expected_generation)
        if engagement.status != EngagementStatus.PLANNED.value:
            raise InvalidStateError("Engagement", engagement.status, "reassign the scope of")
        contract = load_for_update(Contract, engagement.contract_id)
        scope_registry.validate_within(scope_type, scope_id, contract.scope_type, contract.scope_id)
        engagement.assigned_scope_type = scope_type
        engagement.assigned_scope_id = scope_id

    logger.info(
        "Engagement scope reassigned",
        extra={"engagement_id": engagement.id, "scope_id": scope_id},
    )
    return engagement


# ── Lifecycle Transitions ────────────────────────────────────────────────────


def start(engagement_id, *, started_at=None, expected_generation=None) -> Engagement:
    """
    PLANNED → ACTIVE.

    ``started_at`` defaults to now and may not lie in the future.
    """
    now = datetime.now(timezone.utc)
    started_at = as_utc(started_at) if started_at is not None else now
    if started_at > now:
        raise ValidationError(
            "started_at cannot be in the future", details={"started_at": started_at.isoformat()},
        )

    with transaction("Engagement"):
        engagement = load_for_update(Engagement, engagement_id)
        check_generation(engagement, expected_generation)
        if not validate_engagement_transition(engagement.status, EngagementStatus.ACTIVE.value):
            raise InvalidStateError("Engagement", engagement.status, "start")
        contract = load_for_update(Contract, engagement.contract_id)
        _require_signed(contract, "start engagements")
        old = _transition(engagement, EngagementStatus.ACTIVE.value, "start")
        engagement.started_at = started_at
        NotificationService.emit(
            EventType.ENGAGEMENT_STARTED,
            entity_type="Engagement",
            entity_id=engagement.id,
            payload={
                "engagementId": engagement.id,
                "contractId": engagement.contract_id,
                "startedAt": started_at.isoformat(),
            },
        )

    logger.info(
        "Engagement started",
        extra={"engagement_id": engagement.id, "contract_id": engagement.contract_id,
               "from_status": old, "to_status": engagement.status},
    )
    NotificationService.flush_outbox()
    return engagement


def complete(engagement_id, *, expected_generation=None) -> Engagement:
    """ACTIVE → COMPLETED (terminal)."""
    with transaction("Engagement"):
        engagement = load_for_update(Engagement, engagement_id)
        check_generation(engagement, expected_generation)
        old = _transition(engagement, EngagementStatus.COMPLETED.value, "complete")
        engagement.completed_at = datetime.now(timezone.utc)
        NotificationService.emit(
            EventType.ENGAGEMENT_COMPLETED,
            entity_type="Engagement",
            entity_id=engagement.id,
            payload={
                "engagementId": engagement.id,
                "contractId": engagement.contract_id,
                "completedAt": engagement.completed_at.isoformat(),
            },
        )

    logger.info(
        "Engagement completed",
        extra={"engagement_id": engagement.id, "from_status": old, "to_status": engagement.status},
    )
    NotificationService.flush_outbox()
    return engagement


def cancel(engagement_id, *, reason=None, expected_generation=None) -> Engagement:
    """
    PLANNED | ACTIVE → CANCELLED (terminal).

    The contract must still be SIGNED. A PLANNED engagement of a cancelled
    contract stays PLANNED and can never start.
    """
    with transaction("Engagement"):
        engagement = load_for_update(Engagement, engagement_id)
        check_generation(engagement, expected_generation)
        if not validate_engagement_transition(engagement.status, EngagementStatus.CANCELLED.value):
            raise InvalidStateError("Engagement", engagement.status, "cancel")
        contract = load_for_update(Contract, engagement.contract_id)
        _require_signed(contract, "cancel engagements")
        old = _transition(engagement, EngagementStatus.CANCELLED.value, "cancel")
        engagement.cancelled_at = datetime.now(timezone.utc)
        engagement.cancel_reason = reason

    logger.info(
        "Engagement cancelled",
        extra={"engagement_id": engagement.id, "from_status": old, "to_status": engagement.status},
    )
    return engagement


# ── Progress ─────────────────────────────────────────────────────────────────


def progress(engagement_id, *, as_of=None) -> dict:
    """
    Milestone roll-up for an engagement.

    Returns:
        {"engagementId", "status", "total", "byStatus": {...},
         "completed", "overdue", "percentComplete"}
    """
    engagement = get_or_raise(Engagement, engagement_id)
    as_of = parse_date(as_of, "as_of") or datetime.now(timezone.utc).date()
    rows = db.session.execute(
        select(Milestone.status, func.count(Milestone.id))
        .where(Milestone.engagement_id == engagement.id)
        .group_by(Milestone.status)
    ).all()
    by_status = {s.value: 0 for s in MilestoneStatus}
    by_status.update({status: count for status, count in rows})
    total = sum(by_status.values())
    overdue = db.session.execute(
        select(func.count(Milestone.id)).where(
            Milestone.engagement_id == engagement.id,
            Milestone.status != MilestoneStatus.COMPLETED.value,
            Milestone.due_date < as_of,
        )
    ).scalar() or 0
    completed = by_status[MilestoneStatus.COMPLETED.value]
    return {
        "engagementId": engagement.id,
        "status": engagement.status,
        "total": total,
        "byStatus": by_status,
        "completed": completed,
        "overdue": overdue,
        "percentComplete": round(completed * 100.0 / total, 1) if total else 0.0,
        "asOf": as_of.isoformat(),
    }
