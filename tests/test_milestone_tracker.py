"""
Tests: Milestone tracking.

Covers creation guards, forward-only one-step advancement,
the ACTIVE-engagement precondition, contract link checks and overdue listing.
"""

from datetime import date, datetime, timezone

import pytest

from dealchain.core.exceptions import (
    InvalidStateError,
    PreconditionError,
    StateConflictError,
    ValidationError,
)
from dealchain.models import db as _db
from dealchain.services import contract_generator, engagement_scheduler, milestone_tracker as mt


@pytest.fixture()
def milestone(active_engagement):
    return mt.create(
        active_engagement.id, "Piling complete", "MILESTONE", "2026-02-01",
        description="All 240 piles driven and tested",
    )


# ── create ───────────────────────────────────────────────────────────────────


def test_create_pending_milestone(milestone, active_engagement):
    assert milestone.status == "PENDING"
    assert milestone.contract_id == active_engagement.contract_id
    assert milestone.due_date == date(2026, 2, 1)
    assert milestone.to_dict()["type"] == "MILESTONE"


def test_planned_engagement_accepts_milestones(signed_contract, scopes):
    e = engagement_scheduler.create(signed_contract.id, "PROJECT", scopes["project"], "PROJECT_EXECUTION")

    m = mt.create(e.id, "Mobilisation", "DELIVERABLE", date(2026, 1, 10))

    assert m.engagement_id == e.id


def test_terminal_engagement_rejects_milestones(active_engagement):
    engagement_scheduler.complete(active_engagement.id)

    with pytest.raises(InvalidStateError):
        mt.create(active_engagement.id, "Too late", "DELIVERABLE", "2026-05-01")


@pytest.mark.parametrize("title, type_, due, field", [
    ("", "MILESTONE", "2026-02-01", "title"),
    ("Ok", "CHECKPOINT", "2026-02-01", "type"),
    ("Ok", "MILESTONE", None, "due_date"),
])
def test_create_validation(active_engagement, title, type_, due, field):
    with pytest.raises(ValidationError) as exc:
        mt.create(active_engagement.id, title, type_, due)

    assert field in exc.value.details


def test_bad_due_date_format(active_engagement):
    with pytest.raises(ValidationError):
        mt.create(active_engagement.id, "Ok", "MILESTONE", "01/02/2026")


# ── advance ──────────────────────────────────────────────────────────────────


def test_advance_one_step_at_a_time(milestone, dispatcher):
    m = mt.advance(milestone.id, "IN_PROGRESS")
    assert m.status == "IN_PROGRESS"
    assert m.started_at is not None

    m = mt.advance(milestone.id, "COMPLETED")
    assert m.status == "COMPLETED"
    assert m.completed_at is not None

    completed = [e for e in dispatcher.events if e["eventType"] == "MilestoneCompleted"]
    assert completed[0]["payload"]["milestoneId"] == milestone.id


def test_skipping_a_step_is_invalid(milestone):
    with pytest.raises(InvalidStateError):
        mt.advance(milestone.id, "COMPLETED")

    assert mt.get(milestone.id).status == "PENDING"


def test_no_backward_moves(milestone):
    mt.advance(milestone.id, "IN_PROGRESS")

    with pytest.raises(InvalidStateError):
        mt.advance(milestone.id, "PENDING")


def test_completed_is_final(milestone):
    mt.advance(milestone.id, "IN_PROGRESS")
    mt.advance(milestone.id, "COMPLETED")

    with pytest.raises(InvalidStateError):
        mt.advance(milestone.id, "COMPLETED")


def test_unknown_status(milestone):
    with pytest.raises(ValidationError):
        mt.advance(milestone.id, "DONE")


def test_engagement_must_be_active(signed_contract, scopes):
    e = engagement_scheduler.create(signed_contract.id, "PROJECT", scopes["project"], "PROJECT_EXECUTION")
    m = mt.create(e.id, "Mobilisation", "DELIVERABLE", "2026-01-10")

    with pytest.raises(PreconditionError):
        mt.advance(m.id, "IN_PROGRESS")


def test_stale_generation(milestone):
    with pytest.raises(StateConflictError):
        mt.advance(milestone.id, "IN_PROGRESS", expected_generation=milestone.generation + 1)


def test_contract_link_drift_is_rejected(milestone, signed_contract, parties, make_terms):
    other = contract_generator.generate_sub_contract(
        signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
    )
    # Simulate a corrupted denormalized link
    m = mt.get(milestone.id)
    m.contract_id = other.id
    _db.session.commit()

    with pytest.raises(ValidationError):
        mt.advance(milestone.id, "IN_PROGRESS")


# ── queries ──────────────────────────────────────────────────────────────────


def test_list_for_engagement_orders_by_due_date(active_engagement):
    late = mt.create(active_engagement.id, "Handover", "DELIVERABLE", "2026-06-30")
    early = mt.create(active_engagement.id, "Survey", "DELIVERABLE", "2026-01-15")

    assert [m.id for m in mt.list_for_engagement(active_engagement.id)] == [early.id, late.id]


def test_list_overdue(milestone, active_engagement):
    future = mt.create(active_engagement.id, "Handover", "DELIVERABLE", "2026-06-30")
    done = mt.create(active_engagement.id, "Survey", "DELIVERABLE", "2026-01-15")
    mt.advance(done.id, "IN_PROGRESS")
    mt.advance(done.id, "COMPLETED")

    overdue = mt.list_overdue(as_of="2026-03-01")

    assert [m.id for m in overdue] == [milestone.id]
    assert future.id not in {m.id for m in overdue}
    assert mt.list_overdue(as_of="2026-03-01", contract_id="other-contract") == []


def test_list_overdue_accepts_datetime(milestone):
    late_evening = datetime(2026, 2, 1, 23, 0, tzinfo=timezone.utc)

    assert mt.list_overdue(as_of=late_evening) == []
    assert [m.id for m in mt.list_overdue(as_of=datetime(2026, 2, 2, 0, 1))] == [milestone.id]
