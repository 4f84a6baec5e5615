"""
Proposal Negotiator — Service Layer.

Business logic for:
    - Submission of a Proposal (v1) against a PUBLISHED Opportunity
    - Counter-offers: append-only versions, version-scoped acceptance reset
    - Bi-party acceptance gating → FINAL_ACCEPTED (one-way gate)
    - Rejection (terminal)
    - Version history queries: get_version, compare_versions, negotiation_thread

Roles on a proposal:
    OWNER  = receiver (opportunity creator)
    OTHER  = initiator

Status after a new version:
    authored by OTHER  → UNDER_REVIEW       (owner to review)
    authored by OWNER  → CHANGES_REQUESTED  (initiator to respond)

Finalization (both roles accepted current_version), in one transaction:
    proposal → FINAL_ACCEPTED
    opportunity soft-locked (opportunity_registry.lock)
    contract derived (contract_generator.materialize_for_proposal)
    ProposalFinalAccepted + ContractGenerated events staged

Usage:
    from dealchain.services import proposal_negotiator as pn

    p = pn.submit(opp.id, "party-vendor-1", {"total": 175000, "currency": "SAR"})
    pn.propose_new_version(p.id, {"total": 165000, "currency": "SAR"},
                           opp.creator_party_id, comment="Please revise the pricing")
    pn.accept(p.id, "OWNER", 2, opp.creator_party_id)
    pn.accept(p.id, "OTHER", 2, "party-vendor-1")
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from dealchain.core.exceptions import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from dealchain.models import db
from dealchain.models.base import iso
from dealchain.models.contract import BUYER_PARTY_TYPES, PROVIDER_PARTY_TYPES
from dealchain.models.event import EventType
from dealchain.models.opportunity import Opportunity, OpportunityIntent, OpportunityStatus
from dealchain.models.proposal import (
    INITIATOR_SIDES,
    InitiatorSide,
    PartyRole,
    Proposal,
    ProposalStatus,
    ProposalVersion,
    TERMINAL_STATUSES,
    validate_proposal_transition,
)
from dealchain.services import contract_generator, opportunity_registry, party_resolver
from dealchain.services.helpers.store import get_or_raise, load_for_update, transaction
from dealchain.services.notification import NotificationService
from dealchain.services.terms import changed_fields, diff_terms, validate_terms

logger = logging.getLogger(__name__)

# Opportunity intent → side the initiator takes in the resulting contract
_INTENT_INITIATOR_SIDE = {
    OpportunityIntent.REQUEST_SERVICE.value: InitiatorSide.PROVIDER.value,
    OpportunityIntent.OFFER_SERVICE.value: InitiatorSide.BUYER.value,
}


# ── Helpers ──────────────────────────────────────────────────────────────────


def _resolve_initiator_side(intent, requested):
    if requested is not None and requested not in INITIATOR_SIDES:
        raise ValidationError(
            f"Invalid initiator side: {requested}",
            details={"initiator_side": f"must be one of {', '.join(INITIATOR_SIDES)}"},
        )
    derived = _INTENT_INITIATOR_SIDE.get(intent)
    if derived is None:
        # BOTH: the initiator chooses; providers are the common case
        return requested or InitiatorSide.PROVIDER.value
    if requested is not None and requested != derived:
        raise ValidationError(
            f"A {intent} opportunity only accepts {derived} proposals",
            details={"initiator_side": f"must be {derived}"},
        )
    return derived


def _check_side_types(side, initiator_role, receiver_role):
    if side == InitiatorSide.BUYER.value:
        buyer_type, provider_type = initiator_role.type, receiver_role.type
    else:
        buyer_type, provider_type = receiver_role.type, initiator_role.type
    errors = {}
    if buyer_type not in BUYER_PARTY_TYPES:
        errors["buyer"] = f"{buyer_type} cannot act as buyer"
    if provider_type not in PROVIDER_PARTY_TYPES:
        errors["provider"] = f"{provider_type} cannot act as provider"
    if errors:
        raise ValidationError("Parties cannot take these contract roles", details=errors)


def _validate_comment(comment):
    min_len = current_app.config.get("PROPOSAL_VERSION_COMMENT_MIN_LENGTH", 10)
    if not isinstance(comment, str) or len(comment.strip()) < min_len:
        raise ValidationError(
            f"A comment of at least {min_len} characters is required for a new version",
            details={"comment": f"min {min_len} characters"},
        )
    return comment.strip()


def _apply_version_terms(proposal, terms):
    proposal.total = terms["total"]
    proposal.currency = terms["currency"]
    proposal.payment_terms = terms.get("paymentTerms")


def _clear_acceptance(proposal):
    proposal.owner_accepted_version = None
    proposal.owner_accepted_at = None
    proposal.other_party_accepted_version = None
    proposal.other_party_accepted_at = None
    proposal.mutually_accepted_version = None


def _require_role(proposal, actor_id, action):
    role = proposal.role_of(actor_id)
    if role is None:
        raise AuthorizationError(actor_id, f"Only the proposal counterparts may {action}")
    return role


def _transition(proposal, new_status, action):
    if not validate_proposal_transition(proposal.status, new_status):
        raise InvalidStateError("Proposal", proposal.status, action)
    old = proposal.status
    proposal.status = new_status
    return old


# ── Submission ───────────────────────────────────────────────────────────────


def submit(opportunity_id, initiator_id, terms, *, comment="", initiator_side=None) -> Proposal:
    """
    Create a Proposal with version 1 in SUBMITTED.

    Raises:
        NotFoundError: opportunity missing or CLOSED.
        InvalidStateError: opportunity not yet published.
        ValidationError: malformed terms, self-proposal, incompatible roles.
        AuthorizationError: initiator or owner not a known, verified party.
    """
    normalized = validate_terms(terms)
    if comment is not None and not isinstance(comment, str):
        raise ValidationError("comment must be a string", details={"comment": "must be a string"})
    initiator_role = party_resolver.resolve(initiator_id, purpose="submit a proposal")

    with transaction("Proposal"):
        # Row lock keeps a concurrent close from slipping past the status check
        opp = db.session.execute(
            select(Opportunity).where(Opportunity.id == opportunity_id).with_for_update()
        ).scalar_one_or_none()
        if opp is None or opp.status == OpportunityStatus.CLOSED.value:
            raise NotFoundError(resource="Opportunity", resource_id=opportunity_id)
        if opp.status != OpportunityStatus.PUBLISHED.value:
            raise InvalidStateError("Opportunity", opp.status, "submit a proposal against")
        if initiator_id == opp.creator_party_id:
            raise ValidationError(
                "The opportunity creator cannot submit a proposal to their own opportunity",
                details={"initiator_id": "is the opportunity creator"},
            )
        receiver_role = party_resolver.resolve(opp.creator_party_id, purpose="receive a proposal")
        side = _resolve_initiator_side(opp.intent, initiator_side)
        _check_side_types(side, initiator_role, receiver_role)

        proposal = Proposal(
            opportunity_id=opp.id,
            initiator_party_id=initiator_id,
            receiver_party_id=opp.creator_party_id,
            initiator_side=side,
            status=ProposalStatus.SUBMITTED.value,
            current_version=1,
        )
        _apply_version_terms(proposal, normalized)
        proposal.versions.append(ProposalVersion(
            version=1,
            terms=normalized,
            comment=(comment or "").strip(),
            created_by=initiator_id,
            status=ProposalStatus.SUBMITTED.value,
            changed_fields=[],
        ))
        db.session.add(proposal)
        db.session.flush()
        NotificationService.emit(
            EventType.PROPOSAL_SUBMITTED,
            entity_type="Proposal",
            entity_id=proposal.id,
            payload={
                "proposalId": proposal.id,
                "opportunityId": opp.id,
                "initiatorPartyId": initiator_id,
                "receiverPartyId": opp.creator_party_id,
                "version": 1,
            },
        )

    logger.info(
        "Proposal submitted",
        extra={"proposal_id": proposal.id, "opportunity_id": opportunity_id,
               "party_id": initiator_id, "version": 1, "to_status": proposal.status},
    )
    NotificationService.flush_outbox()
    return proposal


# ── Counter-offers ───────────────────────────────────────────────────────────


def propose_new_version(proposal_id, terms, actor_id, *, comment, expected_version=None) -> Proposal:
    """
    Append version current_version + 1 authored by ``actor_id``.

    Prior acceptance is cleared; acceptance is always version-scoped.

    Raises:
        InvalidStateError: proposal FINAL_ACCEPTED or REJECTED.
        StateConflictError: ``expected_version`` is not the current version.
        ValidationError: malformed terms or missing comment.
        AuthorizationError: actor is not a counterpart.
    """
    normalized = validate_terms(terms)
    comment = _validate_comment(comment)
    party_resolver.resolve(actor_id, purpose="propose a new version")

    with transaction("Proposal"):
        proposal = load_for_update(Proposal, proposal_id)
        role = _require_role(proposal, actor_id, "propose a new version")
        if proposal.status in TERMINAL_STATUSES:
            raise InvalidStateError("Proposal", proposal.status, "propose a new version of")
        if expected_version is not None and expected_version != proposal.current_version:
            raise StateConflictError(
                f"Proposal {proposal.id} is at version {proposal.current_version}, "
                f"not {expected_version}",
                current=proposal.current_version,
            )

        new_status = (
            ProposalStatus.CHANGES_REQUESTED.value if role == PartyRole.OWNER.value
            else ProposalStatus.UNDER_REVIEW.value
        )
        previous_terms = proposal.latest_version.terms if proposal.latest_version else {}
        old = _transition(proposal, new_status, "propose a new version of")
        new_version = proposal.current_version + 1
        fields = changed_fields(previous_terms, normalized)

        proposal.versions.append(ProposalVersion(
            version=new_version,
            terms=normalized,
            comment=comment,
            created_by=actor_id,
            status=new_status,
            changed_fields=fields,
        ))
        proposal.current_version = new_version
        _apply_version_terms(proposal, normalized)
        _clear_acceptance(proposal)
        NotificationService.emit(
            EventType.PROPOSAL_VERSIONED,
            entity_type="Proposal",
            entity_id=proposal.id,
            payload={
                "proposalId": proposal.id,
                "version": new_version,
                "createdBy": actor_id,
                "status": new_status,
                "changedFields": fields,
            },
        )

    logger.info(
        "Proposal version %s appended", new_version,
        extra={"proposal_id": proposal.id, "party_id": actor_id, "version": new_version,
               "from_status": old, "to_status": new_status},
    )
    NotificationService.flush_outbox()
    return proposal


# ── Acceptance ───────────────────────────────────────────────────────────────


def accept(proposal_id, party_role, version, actor_id) -> Proposal:
    """
    Record ``party_role``'s acceptance of ``version``.

    Acceptance only counts for the current version. When both roles hold
    the same accepted version the proposal is finalized (see module doc).
    Re-accepting an already recorded acceptance is a no-op.

    Raises:
        StateConflictError: ``version`` is not the current version.
        InvalidStateError: proposal REJECTED, or already finalized on another version.
        AuthorizationError: actor does not hold ``party_role``.
        ValidationError: unknown role or non-integer version.
    """
    party_role = getattr(party_role, "value", party_role)
    if party_role not in (PartyRole.OWNER.value, PartyRole.OTHER.value):
        raise ValidationError(
            f"Invalid party role: {party_role}", details={"party_role": "OWNER | OTHER"},
        )
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ValidationError("version must be a positive integer", details={"version": version})
    party_resolver.resolve(actor_id, purpose="accept a proposal")

    finalized = False
    with transaction("Proposal"):
        proposal = load_for_update(Proposal, proposal_id)
        if actor_id != proposal.party_for_role(party_role):
            raise AuthorizationError(actor_id, f"Actor does not hold the {party_role} role")

        if proposal.status == ProposalStatus.FINAL_ACCEPTED.value:
            if version == proposal.mutually_accepted_version:
                return proposal
            raise InvalidStateError("Proposal", proposal.status, "accept another version of")
        if proposal.status == ProposalStatus.REJECTED.value:
            raise InvalidStateError("Proposal", proposal.status, "accept")
        if version != proposal.current_version:
            raise StateConflictError(
                f"Version {version} is stale; proposal {proposal.id} is at version "
                f"{proposal.current_version}",
                current=proposal.current_version,
            )

        now = datetime.now(timezone.utc)
        if party_role == PartyRole.OWNER.value:
            if proposal.owner_accepted_version == version:
                return proposal
            proposal.owner_accepted_version = version
            proposal.owner_accepted_at = now
        else:
            if proposal.other_party_accepted_version == version:
                return proposal
            proposal.other_party_accepted_version = version
            proposal.other_party_accepted_at = now

        if (
            proposal.owner_accepted_version is not None
            and proposal.owner_accepted_version == proposal.other_party_accepted_version
            and proposal.owner_accepted_version == proposal.current_version
        ):
            _finalize(proposal, now)
            finalized = True

    logger.info(
        "Proposal version %s accepted by %s", version, party_role,
        extra={"proposal_id": proposal.id, "party_id": actor_id, "version": version},
    )
    if finalized:
        logger.info(
            "Proposal final-accepted",
            extra={"proposal_id": proposal.id, "version": version,
                   "to_status": ProposalStatus.FINAL_ACCEPTED.value,
                   "event_type": EventType.PROPOSAL_FINAL_ACCEPTED.value},
        )
    NotificationService.flush_outbox()
    return proposal


def _finalize(proposal, now):
    """Apply the FINAL_ACCEPTED gate and its side effects in the open transaction."""
    _transition(proposal, ProposalStatus.FINAL_ACCEPTED.value, "finalize")
    proposal.mutually_accepted_version = proposal.current_version
    proposal.final_accepted_at = now

    opportunity = load_for_update(Opportunity, proposal.opportunity_id)
    opportunity_registry.lock(opportunity, proposal.id)

    NotificationService.emit(
        EventType.PROPOSAL_FINAL_ACCEPTED,
        entity_type="Proposal",
        entity_id=proposal.id,
        payload={
            "proposalId": proposal.id,
            "opportunityId": proposal.opportunity_id,
            "mutuallyAcceptedVersion": proposal.mutually_accepted_version,
            "finalAcceptedAt": now.isoformat(),
        },
    )
    if current_app.config.get("AUTO_GENERATE_CONTRACTS", True):
        contract_generator.materialize_for_proposal(proposal)


# ── Rejection ────────────────────────────────────────────────────────────────


def reject(proposal_id, reason, actor_id) -> Proposal:
    """
    → REJECTED (terminal). Idempotent for an already rejected proposal.

    Raises:
        InvalidStateError: proposal already FINAL_ACCEPTED.
        AuthorizationError: actor is not a counterpart.
        ValidationError: empty reason.
    """
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("A rejection reason is required", details={"reason": "required"})
    party_resolver.resolve(actor_id, purpose="reject a proposal")

    with transaction("Proposal"):
        proposal = load_for_update(Proposal, proposal_id)
        _require_role(proposal, actor_id, "reject")
        if proposal.status == ProposalStatus.REJECTED.value:
            return proposal
        old = _transition(proposal, ProposalStatus.REJECTED.value, "reject")
        proposal.rejection_reason = reason.strip()
        proposal.rejected_by = actor_id
        proposal.rejected_at = datetime.now(timezone.utc)
        NotificationService.emit(
            EventType.PROPOSAL_REJECTED,
            entity_type="Proposal",
            entity_id=proposal.id,
            payload={"proposalId": proposal.id, "rejectedBy": actor_id, "reason": proposal.rejection_reason},
        )

    logger.info(
        "Proposal rejected",
        extra={"proposal_id": proposal.id, "party_id": actor_id,
               "from_status": old, "to_status": proposal.status},
    )
    NotificationService.flush_outbox()
    return proposal


# ── Query ────────────────────────────────────────────────────────────────────


def get(proposal_id) -> Proposal:
    return get_or_raise(Proposal, proposal_id)


def list_for_opportunity(opportunity_id, status=None):
    get_or_raise(Opportunity, opportunity_id)
    stmt = select(Proposal).where(Proposal.opportunity_id == opportunity_id)
    if status:
        stmt = stmt.where(Proposal.status == status)
    return db.session.execute(stmt.order_by(Proposal.created_at, Proposal.id)).scalars().all()


def get_version(proposal_id, version) -> ProposalVersion:
    get_or_raise(Proposal, proposal_id)
    row = db.session.execute(
        select(ProposalVersion).where(
            ProposalVersion.proposal_id == proposal_id,
            ProposalVersion.version == version,
        )
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError(resource="ProposalVersion", resource_id=f"{proposal_id}/v{version}")
    return row


def compare_versions(proposal_id, version_a, version_b) -> dict:
    """
    Diff two versions of a proposal.

    Returns:
        {
            "proposalId": str, "fromVersion": int, "toVersion": int,
            "changes": {"pricing": {...}, "paymentTerms": {...}, "timeline": {...},
                        "services": {...}, "other": {...}},
            "changedFields": [...], "changeCount": N, "summary": str,
        }
    """
    old = get_version(proposal_id, version_a)
    new = get_version(proposal_id, version_b)
    changes = diff_terms(old.terms, new.terms)

    change_count = (
        len(changes["pricing"]) + len(changes["services"]) + len(changes["other"])
        + (1 if changes["paymentTerms"] else 0) + (1 if changes["timeline"] else 0)
    )
    parts = [
        f"{key}: {delta['from']} → {delta['to']}" for key, delta in changes["pricing"].items()
    ]
    for key in ("paymentTerms", "timeline"):
        if changes[key]:
            parts.append(f"{key} changed")
    parts.extend(f"{key} changed" for key in changes["services"])
    parts.extend(f"{key} changed" for key in changes["other"])

    return {
        "proposalId": proposal_id,
        "fromVersion": old.version,
        "toVersion": new.version,
        "changes": changes,
        "changedFields": changed_fields(old.terms, new.terms),
        "changeCount": change_count,
        "summary": "; ".join(parts) if parts else "No changes",
    }


def negotiation_thread(proposal_id) -> list[dict]:
    """
    Chronological negotiation history of a proposal.

    Each version is an entry; current acceptances, finalization and
    rejection are appended as they are recorded on the aggregate.
    """
    proposal = get_or_raise(Proposal, proposal_id)
    thread = [
        {
            "type": "VERSION",
            "version": v.version,
            "by": v.created_by,
            "role": proposal.role_of(v.created_by),
            "comment": v.comment,
            "status": v.status,
            "changedFields": list(v.changed_fields or []),
            "at": iso(v.created_at),
        }
        for v in proposal.versions
    ]
    if proposal.owner_accepted_version is not None:
        thread.append({
            "type": "ACCEPTANCE", "version": proposal.owner_accepted_version,
            "by": proposal.receiver_party_id, "role": PartyRole.OWNER.value,
            "at": iso(proposal.owner_accepted_at),
        })
    if proposal.other_party_accepted_version is not None:
        thread.append({
            "type": "ACCEPTANCE", "version": proposal.other_party_accepted_version,
            "by": proposal.initiator_party_id, "role": PartyRole.OTHER.value,
            "at": iso(proposal.other_party_accepted_at),
        })
    if proposal.status == ProposalStatus.FINAL_ACCEPTED.value:
        thread.append({
            "type": "FINAL_ACCEPTED", "version": proposal.mutually_accepted_version,
            "at": iso(proposal.final_accepted_at),
        })
    if proposal.status == ProposalStatus.REJECTED.value:
        thread.append({
            "type": "REJECTED", "by": proposal.rejected_by,
            "reason": proposal.rejection_reason, "at": iso(proposal.rejected_at),
        })
    thread.sort(key=lambda entry: entry["at"] or "")
    return thread
