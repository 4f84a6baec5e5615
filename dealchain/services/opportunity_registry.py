"""
Opportunity Registry — Service Layer.

Business logic for:
    - Create / update / delete of draft and published opportunities
    - Lifecycle transitions: publish, close (monotonic, see OPPORTUNITY_TRANSITIONS)
    - Soft lock once a proposal against the opportunity is finalized
    - Listing by status / intent / creator

Usage:
    from dealchain.services import opportunity_registry

    opp = opportunity_registry.create({
        "title": "Structural works for Tower B",
        "intent": "REQUEST_SERVICE",
        "creatorPartyId": "party-beneficiary-1",
    })
    opportunity_registry.publish(opp.id)
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from dealchain.core.exceptions import (
    AuthorizationError,
    InvalidStateError,
    PreconditionError,
    ValidationError,
)
from dealchain.models import db
from dealchain.models.base import _uuid
from dealchain.models.opportunity import (
    INTENTS,
    PAYMENT_TYPES,
    Opportunity,
    OpportunityStatus,
    validate_opportunity_transition,
)
from dealchain.models.proposal import Proposal
from dealchain.models.scope import SCOPE_TYPES
from dealchain.services import party_resolver
from dealchain.services.helpers.store import (
    check_generation,
    get_or_raise,
    load_for_update,
    transaction,
)

logger = logging.getLogger(__name__)

# camelCase input key → model attribute, for fields editable after creation
_EDITABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "location": "location",
    "paymentTerms": "payment_terms",
    "skillsTags": "skills_tags",
    "serviceItems": "service_items",
}


# ── Validation ───────────────────────────────────────────────────────────────


def _validate_fields(data, *, partial=False):
    """Validate opportunity input; returns field-level errors dict."""
    errors = {}

    if not partial or "title" in data:
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            errors["title"] = "required"
        elif len(title) > 255:
            errors["title"] = "must be at most 255 characters"

    if not partial:
        if data.get("intent") not in INTENTS:
            errors["intent"] = f"must be one of {', '.join(INTENTS)}"
        if not data.get("creatorPartyId"):
            errors["creatorPartyId"] = "required"
        scope_type = data.get("scopeType")
        if scope_type is not None and scope_type not in SCOPE_TYPES:
            errors["scopeType"] = f"must be one of {', '.join(SCOPE_TYPES)}"
        if scope_type is not None and not data.get("scopeId"):
            errors["scopeId"] = "required when scopeType is given"

    if "description" in data and not isinstance(data["description"], str):
        errors["description"] = "must be a string"
    if "location" in data and data["location"] is not None and not isinstance(data["location"], dict):
        errors["location"] = "must be an object"

    payment_terms = data.get("paymentTerms")
    if payment_terms is not None:
        if not isinstance(payment_terms, dict):
            errors["paymentTerms"] = "must be an object"
        elif payment_terms.get("type") not in PAYMENT_TYPES:
            errors["paymentTerms.type"] = f"must be one of {', '.join(PAYMENT_TYPES)}"

    for key in ("skillsTags", "serviceItems"):
        if key in data and not isinstance(data[key], list):
            errors[key] = "must be a list"

    return errors


def _require_creator(opp, actor_id, action):
    if actor_id is not None and actor_id != opp.creator_party_id:
        raise AuthorizationError(actor_id, f"Only the opportunity creator may {action} it")


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create(data: dict) -> Opportunity:
    """Create an Opportunity in DRAFT."""
    if not isinstance(data, dict):
        raise ValidationError("Opportunity data must be an object")
    errors = _validate_fields(data)
    if errors:
        raise ValidationError("Invalid opportunity", details=errors)
    party_resolver.resolve(data["creatorPartyId"], purpose="create an opportunity")

    opp_id = _uuid()
    scope_type = data.get("scopeType") or "OPPORTUNITY"
    with transaction("Opportunity"):
        opp = Opportunity(
            id=opp_id,
            title=data["title"].strip(),
            description=data.get("description") or "",
            intent=data["intent"],
            status=OpportunityStatus.DRAFT.value,
            scope_type=scope_type,
            scope_id=data.get("scopeId") or opp_id,
            location=data.get("location"),
            payment_terms=data.get("paymentTerms"),
            skills_tags=list(data.get("skillsTags") or []),
            service_items=list(data.get("serviceItems") or []),
            creator_party_id=data["creatorPartyId"],
        )
        db.session.add(opp)

    logger.info(
        "Opportunity created", extra={"opportunity_id": opp.id, "to_status": opp.status},
    )
    return opp


def get(opportunity_id) -> Opportunity:
    return get_or_raise(Opportunity, opportunity_id)


def list_opportunities(status=None, intent=None, creator_party_id=None):
    """Return opportunities, newest first, optionally filtered."""
    stmt = select(Opportunity)
    if status:
        stmt = stmt.where(Opportunity.status == status)
    if intent:
        stmt = stmt.where(Opportunity.intent == intent)
    if creator_party_id:
        stmt = stmt.where(Opportunity.creator_party_id == creator_party_id)
    stmt = stmt.order_by(Opportunity.created_at.desc(), Opportunity.id)
    return db.session.execute(stmt).scalars().all()


def update(opportunity_id, changes: dict, *, actor_id, expected_generation=None) -> Opportunity:
    """
    Edit descriptive fields of a DRAFT or PUBLISHED, not soft-locked opportunity.

    Intent, scope and creator are fixed at creation.
    """
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No changes supplied")
    unknown = sorted(set(changes) - set(_EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(
            "Fields cannot be edited", details={k: "not editable" for k in unknown},
        )
    errors = _validate_fields(changes, partial=True)
    if errors:
        raise ValidationError("Invalid opportunity", details=errors)

    with transaction("Opportunity"):
        opp = load_for_update(Opportunity, opportunity_id)
        check_generation(opp, expected_generation)
        _require_creator(opp, actor_id, "edit")
        if opp.status == OpportunityStatus.CLOSED.value:
            raise InvalidStateError("Opportunity", opp.status, "edit")
        if opp.is_locked:
            raise InvalidStateError("Opportunity", "LOCKED", "edit")
        for key, value in changes.items():
            if key == "title":
                value = value.strip()
            setattr(opp, _EDITABLE_FIELDS[key], value)

    logger.info("Opportunity updated", extra={"opportunity_id": opp.id})
    return opp


def delete(opportunity_id, *, actor_id=None) -> None:
    """Delete an opportunity that no proposal references; afterwards only ``close`` applies."""
    with transaction("Opportunity"):
        opp = load_for_update(Opportunity, opportunity_id)
        _require_creator(opp, actor_id, "delete")
        has_proposals = db.session.execute(
            select(Proposal.id).where(Proposal.opportunity_id == opp.id).limit(1)
        ).first()
        if has_proposals:
            raise PreconditionError(
                f"Opportunity {opp.id} has proposals and can only be closed"
            )
        db.session.delete(opp)
    logger.info("Opportunity deleted", extra={"opportunity_id": opportunity_id})


# ── Lifecycle Transitions ────────────────────────────────────────────────────


def publish(opportunity_id, *, actor_id=None, expected_generation=None) -> Opportunity:
    """DRAFT → PUBLISHED; the opportunity becomes open for proposals."""
    with transaction("Opportunity"):
        opp = load_for_update(Opportunity, opportunity_id)
        check_generation(opp, expected_generation)
        _require_creator(opp, actor_id, "publish")
        old = opp.status
        if old != OpportunityStatus.DRAFT.value:
            raise InvalidStateError("Opportunity", old, "publish")
        opp.status = OpportunityStatus.PUBLISHED.value
        opp.published_at = datetime.now(timezone.utc)

    logger.info(
        "Opportunity published",
        extra={"opportunity_id": opp.id, "from_status": old, "to_status": opp.status},
    )
    return opp


def _close(opp, reason=None):
    """Apply CLOSED in the current transaction; no-op if already closed."""
    if opp.status == OpportunityStatus.CLOSED.value:
        return False
    if not validate_opportunity_transition(opp.status, OpportunityStatus.CLOSED.value):
        raise InvalidStateError("Opportunity", opp.status, "close")
    opp.status = OpportunityStatus.CLOSED.value
    opp.closed_at = datetime.now(timezone.utc)
    opp.close_reason = reason
    return True


def close(opportunity_id, *, reason=None, actor_id=None, expected_generation=None) -> Opportunity:
    """→ CLOSED. Idempotent: closing a closed opportunity changes nothing."""
    with transaction("Opportunity"):
        opp = load_for_update(Opportunity, opportunity_id)
        if opp.status == OpportunityStatus.CLOSED.value:
            return opp
        check_generation(opp, expected_generation)
        _require_creator(opp, actor_id, "close")
        old = opp.status
        _close(opp, reason)

    logger.info(
        "Opportunity closed",
        extra={"opportunity_id": opp.id, "from_status": old, "to_status": opp.status},
    )
    return opp


def lock(opportunity, proposal_id):
    """
    Record the soft lock for a finalized proposal.

    Called inside the finalizing transaction (no commit here). The first
    finalized proposal is recorded; later ones leave the lock as is. With
    AUTO_CLOSE_ON_FINAL_ACCEPT the opportunity is also closed.
    """
    from flask import current_app

    if opportunity.locked_at is None:
        opportunity.locked_at = datetime.now(timezone.utc)
        opportunity.locked_by_proposal_id = proposal_id
        logger.info(
            "Opportunity soft-locked",
            extra={"opportunity_id": opportunity.id, "proposal_id": proposal_id},
        )
    if current_app.config.get("AUTO_CLOSE_ON_FINAL_ACCEPT"):
        _close(opportunity, reason=f"Proposal {proposal_id} final-accepted")
    return opportunity
