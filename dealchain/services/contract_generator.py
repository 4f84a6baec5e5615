"""
Contract Generator — Service Layer.

Business logic for:
    - Deriving exactly one Contract per FINAL_ACCEPTED Proposal
      (unique source_proposal_id; retries return the existing contract)
    - Sub-contracts under a SIGNED parent
    - Multi-party (SPV / JV / consortium) contracts: member shares summing
      to 100, consent from every member before signing
    - Lifecycle: sign (buyer only), cancel (with dependent cascade)
    - Terms amendments while DRAFT; terms are frozen once SIGNED
    - Listing by party / scope / parent

Derivation from a proposal:
    buyer / provider   ← proposal.initiator_side
    party types        ← party resolver
    contract type      ← opportunity scope type + provider type
    termsJSON          ← snapshot of the mutually accepted version
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import or_, select

from dealchain.core.exceptions import (
    AuthorizationError,
    InvalidStateError,
    PreconditionError,
    StateConflictError,
    ValidationError,
)
from dealchain.models import db
from dealchain.models.base import iso
from dealchain.models.contract import (
    BUYER_PARTY_TYPES,
    MEMBER_ROLES,
    MULTI_PARTY_CONTRACT_TYPES,
    PROVIDER_PARTY_TYPES,
    ConsentStatus,
    Contract,
    ContractParty,
    ContractStatus,
    ContractType,
    MemberRole,
    PartyType,
    derive_contract_type,
    validate_contract_transition,
)
from dealchain.models.engagement import Engagement, EngagementStatus
from dealchain.models.event import EventType
from dealchain.models.proposal import Proposal, ProposalStatus
from dealchain.services import party_resolver, scope_registry
from dealchain.services.helpers.store import (
    check_generation,
    get_or_raise,
    load_for_update,
    transaction,
)
from dealchain.services.notification import NotificationService
from dealchain.services.terms import contract_snapshot, timeline_dates, validate_terms

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _find_by_source(proposal_id):
    return db.session.execute(
        select(Contract).where(Contract.source_proposal_id == proposal_id)
    ).scalar_one_or_none()


def _validate_party_types(buyer_type, provider_type):
    errors = {}
    if buyer_type not in BUYER_PARTY_TYPES:
        errors["buyerPartyType"] = f"{buyer_type} cannot be a buyer"
    if provider_type not in PROVIDER_PARTY_TYPES:
        errors["providerPartyType"] = f"{provider_type} cannot be a provider"
    if errors:
        raise ValidationError("Invalid contract parties", details=errors)


def _emit_generated(contract):
    NotificationService.emit(
        EventType.CONTRACT_GENERATED,
        entity_type="Contract",
        entity_id=contract.id,
        payload={
            "contractId": contract.id,
            "contractType": contract.contract_type,
            "sourceProposalId": contract.source_proposal_id,
            "parentContractId": contract.parent_contract_id,
            "buyerPartyId": contract.buyer_party_id,
            "providerPartyId": contract.provider_party_id,
        },
    )


def _require_counterpart(contract, actor_id, action):
    if actor_id is not None and actor_id not in (contract.buyer_party_id, contract.provider_party_id):
        raise AuthorizationError(actor_id, f"Only contract parties may {action} the contract")


def build_from_proposal(proposal):
    """
    Validate and build (but do not add) the Contract for a finalized proposal.

    Raises:
        PreconditionError: proposal not FINAL_ACCEPTED.
        AuthorizationError / ValidationError: parties do not resolve to
            buyer/provider types.
    """
    if proposal.status != ProposalStatus.FINAL_ACCEPTED.value or not proposal.mutually_accepted_version:
        raise PreconditionError(
            f"Proposal {proposal.id} is {proposal.status}; contracts derive only from FINAL_ACCEPTED proposals"
        )
    accepted = next(
        (v for v in proposal.versions if v.version == proposal.mutually_accepted_version), None,
    )
    if accepted is None:
        raise PreconditionError(
            f"Proposal {proposal.id} has no version {proposal.mutually_accepted_version}"
        )

    buyer_role = party_resolver.resolve(proposal.buyer_party_id, purpose="enter a contract")
    provider_role = party_resolver.resolve(proposal.provider_party_id, purpose="enter a contract")
    _validate_party_types(buyer_role.type, provider_role.type)

    opportunity = proposal.opportunity
    start_date, end_date = timeline_dates(accepted.terms)
    return Contract(
        contract_type=derive_contract_type(opportunity.scope_type, provider_role.type),
        status=ContractStatus.DRAFT.value,
        source_proposal_id=proposal.id,
        opportunity_id=opportunity.id,
        scope_type=opportunity.scope_type,
        scope_id=opportunity.scope_id,
        buyer_party_id=proposal.buyer_party_id,
        buyer_party_type=buyer_role.type,
        provider_party_id=proposal.provider_party_id,
        provider_party_type=provider_role.type,
        terms_json=contract_snapshot(
            accepted.terms,
            source={
                "proposalId": proposal.id,
                "version": accepted.version,
                "finalAcceptedAt": iso(proposal.final_accepted_at),
            },
        ),
        start_date=start_date,
        end_date=end_date,
    )


def materialize_for_proposal(proposal):
    """
    Return the proposal's contract, creating it in the current transaction.

    Used by the FINAL_ACCEPTED transition; no commit here.
    """
    existing = _find_by_source(proposal.id)
    if existing is not None:
        return existing
    contract = build_from_proposal(proposal)
    db.session.add(contract)
    db.session.flush()
    _emit_generated(contract)
    logger.info(
        "Contract generated from proposal",
        extra={"contract_id": contract.id, "proposal_id": proposal.id, "to_status": contract.status},
    )
    return contract


# ── Generation ───────────────────────────────────────────────────────────────


def generate_from_proposal(proposal_id) -> Contract:
    """
    Idempotently derive the Contract for a FINAL_ACCEPTED proposal.

    A second call returns the existing contract. If a concurrent call wins
    the insert, the unique key on source_proposal_id rejects ours and the
    winner is returned.
    """
    existing = _find_by_source(proposal_id)
    if existing is not None:
        return existing

    try:
        with transaction("Contract"):
            proposal = load_for_update(Proposal, proposal_id)
            contract = materialize_for_proposal(proposal)
    except StateConflictError:
        winner = _find_by_source(proposal_id)
        if winner is None:
            raise
        logger.info(
            "Concurrent contract generation resolved to existing contract",
            extra={"contract_id": winner.id, "proposal_id": proposal_id},
        )
        return winner

    NotificationService.flush_outbox()
    return contract


def generate_sub_contract(parent_contract_id, buyer_id, provider_id, terms, *,
                          scope_type=None, scope_id=None) -> Contract:
    """
    Create a DRAFT sub-contract under a SIGNED parent.

    The buyer must be the parent's provider; the provider must resolve to
    SUB_CONTRACTOR; the scope defaults to the parent's and must lie within it.
    """
    normalized = validate_terms(terms)
    start_date, end_date = timeline_dates(normalized)

    with transaction("Contract"):
        parent = load_for_update(Contract, parent_contract_id)
        if parent.status != ContractStatus.SIGNED.value:
            raise PreconditionError(
                f"Parent contract {parent.id} is {parent.status}; sub-contracts require SIGNED"
            )
        if buyer_id != parent.provider_party_id:
            raise ValidationError(
                "Sub-contract buyer must be the parent contract's provider",
                details={"buyerId": "must equal parent providerPartyId"},
            )
        if provider_id == buyer_id:
            raise ValidationError(
                "Sub-contract provider must differ from its buyer",
                details={"providerId": "same as buyer"},
            )
        buyer_role = party_resolver.resolve(buyer_id, purpose="issue a sub-contract")
        provider_role = party_resolver.resolve(provider_id, purpose="accept a sub-contract")
        if provider_role.type != PartyType.SUB_CONTRACTOR.value:
            raise ValidationError(
                "Sub-contract provider must be a SUB_CONTRACTOR",
                details={"providerPartyType": provider_role.type},
            )

        scope_type = scope_type or parent.scope_type
        scope_id = scope_id or parent.scope_id
        scope_registry.validate_within(scope_type, scope_id, parent.scope_type, parent.scope_id)

        contract = Contract(
            contract_type=derive_contract_type(scope_type, provider_role.type, is_sub_contract=True),
            status=ContractStatus.DRAFT.value,
            opportunity_id=parent.opportunity_id,
            parent_contract_id=parent.id,
            scope_type=scope_type,
            scope_id=scope_id,
            buyer_party_id=buyer_id,
            buyer_party_type=buyer_role.type,
            provider_party_id=provider_id,
            provider_party_type=provider_role.type,
            terms_json=contract_snapshot(normalized, source={"parentContractId": parent.id}),
            start_date=start_date,
            end_date=end_date,
        )
        db.session.add(contract)
        db.session.flush()
        _emit_generated(contract)

    logger.info(
        "Sub-contract generated",
        extra={"contract_id": contract.id, "to_status": contract.status},
    )
    NotificationService.flush_outbox()
    return contract


# ── Multi-party contracts ────────────────────────────────────────────────────

# Shares are percentages; float sums are compared with this tolerance
SHARE_TOLERANCE = 0.01
_MAX_BOARD_SEATS = 7

_ENTITY_TYPES = {
    "SPV_CONTRACT":         "SPV",
    "JV_CONTRACT":          "JOINT_VENTURE",
    "CONSORTIUM_CONTRACT":  "CONSORTIUM",
    "MULTI_PARTY_CONTRACT": "MULTI_PARTY",
}

_DECISION_MAKING = {
    "SPV_CONTRACT":         "Majority vote weighted by equity share",
    "JV_CONTRACT":          "Consensus",
    "CONSORTIUM_CONTRACT":  "Lead member with member consultation",
    "MULTI_PARTY_CONTRACT": "Majority vote",
}


def _validate_members(members):
    """Normalize ``[{"partyId", "role", "share"}]``; shares must sum to 100."""
    if not isinstance(members, (list, tuple)) or len(members) < 2:
        raise ValidationError(
            "A multi-party contract requires at least 2 parties",
            details={"parties": "at least 2 required"},
        )
    errors = {}
    normalized = []
    seen = set()
    for index, member in enumerate(members):
        key = f"parties[{index}]"
        if not isinstance(member, dict) or not member.get("partyId"):
            errors[key] = "partyId is required"
            continue
        party_id = member["partyId"]
        role = member.get("role", MemberRole.PARTNER.value)
        share = member.get("share")
        if party_id in seen:
            errors[key] = f"duplicate party {party_id}"
        elif role not in MEMBER_ROLES:
            errors[key] = f"role must be one of {', '.join(MEMBER_ROLES)}"
        elif isinstance(share, bool) or not isinstance(share, (int, float)) or not 0 < share <= 100:
            errors[key] = "share must be a number in (0, 100]"
        else:
            normalized.append({"partyId": party_id, "role": role, "share": float(share)})
        seen.add(party_id)
    if errors:
        raise ValidationError("Invalid contract parties", details=errors)

    total = sum(m["share"] for m in normalized)
    if abs(total - 100) > SHARE_TOLERANCE:
        raise ValidationError(
            f"Party shares must sum to 100% (current: {total:g}%)",
            details={"parties": "shares must sum to 100"},
        )
    return normalized


def default_governance(contract_type, members):
    """
    Governance block for a multi-party contract.

    The lead is the largest shareholder (first listed on ties). Quorum is
    a simple majority of members. SPVs get a board of at most seven seats
    chaired by the first member; consortium members are jointly and
    severally liable.
    """
    lead = max(members, key=lambda m: m["share"])
    governance = {
        "entityType": _ENTITY_TYPES[contract_type],
        "leadPartyId": lead["partyId"],
        "decisionMaking": _DECISION_MAKING[contract_type],
        "quorum": len(members) // 2 + 1,
        "equity": [{"partyId": m["partyId"], "share": m["share"]} for m in members],
    }
    if contract_type == ContractType.SPV_CONTRACT.value:
        governance["board"] = [
            {"partyId": m["partyId"], "seat": "CHAIRMAN" if i == 0 else "MEMBER"}
            for i, m in enumerate(members[:_MAX_BOARD_SEATS])
        ]
    elif contract_type == ContractType.CONSORTIUM_CONTRACT.value:
        governance["liability"] = "JOINT_AND_SEVERAL"
    return governance


def _member_terms(contract):
    return [
        {"partyId": p.party_id, "role": p.role, "share": p.share}
        for p in contract.parties
    ]


def generate_multi_party(proposal_id, members, *, contract_type="MULTI_PARTY_CONTRACT",
                         governance=None) -> Contract:
    """
    Derive an SPV / JV / consortium contract from a FINAL_ACCEPTED proposal.

    ``members`` lists every party with its role and percentage share; the
    proposal's buyer and provider must both be among them. A DRAFT
    bilateral contract already derived from the proposal is converted in
    place. Calling again for a contract that is already multi-party
    returns it unchanged.

    Raises:
        ValidationError: fewer than 2 members, bad role/share, shares not
            summing to 100, buyer or provider missing, or an SPV below
            SPV_MIN_CONTRACT_VALUE.
        PreconditionError: proposal not FINAL_ACCEPTED.
        InvalidStateError: the derived contract is no longer DRAFT.
    """
    if contract_type not in MULTI_PARTY_CONTRACT_TYPES:
        raise ValidationError(
            f"{contract_type} is not a multi-party contract type",
            details={"contractType": f"must be one of {', '.join(sorted(MULTI_PARTY_CONTRACT_TYPES))}"},
        )
    normalized = _validate_members(members)

    with transaction("Contract"):
        proposal = load_for_update(Proposal, proposal_id)
        contract = _find_by_source(proposal.id)
        if contract is not None and contract.is_multi_party:
            return contract
        if contract is not None and contract.status != ContractStatus.DRAFT.value:
            raise InvalidStateError("Contract", contract.status, "convert to multi-party")
        created = contract is None
        if created:
            contract = build_from_proposal(proposal)

        member_ids = {m["partyId"] for m in normalized}
        missing = [
            pid for pid in (contract.buyer_party_id, contract.provider_party_id)
            if pid not in member_ids
        ]
        if missing:
            raise ValidationError(
                "Multi-party contract must include the proposal's buyer and provider",
                details={"parties": f"missing {', '.join(missing)}"},
            )
        amount = contract.terms_json["pricing"]["amount"]
        min_value = current_app.config.get("SPV_MIN_CONTRACT_VALUE", 50_000_000)
        if contract_type == ContractType.SPV_CONTRACT.value and amount < min_value:
            raise ValidationError(
                f"SPV contracts require a value of at least {min_value:,.0f}",
                details={"total": f"below {min_value:,.0f}"},
            )
        party_types = {
            m["partyId"]: party_resolver.resolve(m["partyId"], purpose="join a multi-party contract").type
            for m in normalized
        }

        if created:
            db.session.add(contract)
        for position, member in enumerate(normalized):
            contract.parties.append(ContractParty(
                position=position,
                party_id=member["partyId"],
                party_type=party_types[member["partyId"]],
                role=member["role"],
                share=member["share"],
                consent_status=ConsentStatus.PENDING.value,
            ))
        contract.contract_type = contract_type
        contract.is_multi_party = True
        contract.governance_json = governance or default_governance(contract_type, normalized)
        terms = dict(contract.terms_json)
        terms["parties"] = [dict(m) for m in normalized]
        terms["governance"] = contract.governance_json
        contract.terms_json = terms
        db.session.flush()
        if created:
            _emit_generated(contract)

    logger.info(
        "Multi-party contract %s", "generated" if created else "converted",
        extra={"contract_id": contract.id, "proposal_id": proposal_id,
               "to_status": contract.status},
    )
    NotificationService.flush_outbox()
    return contract


def record_consent(contract_id, party_id, *, expected_generation=None) -> Contract:
    """
    Record a member's consent to a DRAFT multi-party contract.

    Idempotent per member. Once every member has consented the buyer may
    sign; the ``allConsented`` flag on the emitted event says so.
    """
    party_resolver.resolve(party_id, purpose="consent to a contract")

    with transaction("Contract"):
        contract = load_for_update(Contract, contract_id)
        check_generation(contract, expected_generation)
        if not contract.is_multi_party:
            raise ValidationError(
                f"Contract {contract.id} is not a multi-party contract",
                details={"contractId": "not multi-party"},
            )
        if contract.status != ContractStatus.DRAFT.value:
            raise InvalidStateError("Contract", contract.status, "record consent on")
        member = next((p for p in contract.parties if p.party_id == party_id), None)
        if member is None:
            raise AuthorizationError(party_id, "Only listed parties may consent to the contract")
        if member.has_consented:
            return contract
        member.consent_status = ConsentStatus.CONSENTED.value
        member.consented_at = datetime.now(timezone.utc)
        all_consented = not contract.pending_consents
        NotificationService.emit(
            EventType.CONTRACT_PARTY_CONSENTED,
            entity_type="Contract",
            entity_id=contract.id,
            payload={"contractId": contract.id, "partyId": party_id, "allConsented": all_consented},
        )

    logger.info(
        "Contract party consented",
        extra={"contract_id": contract.id, "party_id": party_id},
    )
    NotificationService.flush_outbox()
    return contract


# ── Lifecycle Transitions ────────────────────────────────────────────────────


def sign(contract_id, signer_id, *, expected_generation=None) -> Contract:
    """DRAFT → SIGNED by the buyer; termsJSON is frozen from here on."""
    party_resolver.resolve(signer_id, purpose="sign a contract")

    with transaction("Contract"):
        contract = load_for_update(Contract, contract_id)
        check_generation(contract, expected_generation)
        if signer_id != contract.buyer_party_id:
            raise AuthorizationError(signer_id, "Only the buyer may sign the contract")
        old = contract.status
        if not validate_contract_transition(old, ContractStatus.SIGNED.value):
            raise InvalidStateError("Contract", old, "sign")
        if contract.is_sub_contract:
            parent = load_for_update(Contract, contract.parent_contract_id)
            if parent.status != ContractStatus.SIGNED.value:
                raise PreconditionError(
                    f"Parent contract {parent.id} is {parent.status}; sub-contract cannot be signed"
                )
        if contract.is_multi_party and contract.pending_consents:
            raise PreconditionError(
                f"Contract {contract.id} awaits consent from {', '.join(contract.pending_consents)}"
            )
        contract.status = ContractStatus.SIGNED.value
        contract.signed_at = datetime.now(timezone.utc)
        contract.signed_by = signer_id
        NotificationService.emit(
            EventType.CONTRACT_SIGNED,
            entity_type="Contract",
            entity_id=contract.id,
            payload={
                "contractId": contract.id,
                "signedBy": signer_id,
                "signedAt": contract.signed_at.isoformat(),
            },
        )

    logger.info(
        "Contract signed",
        extra={"contract_id": contract.id, "party_id": signer_id,
               "from_status": old, "to_status": contract.status},
    )
    NotificationService.flush_outbox()
    return contract


def cancel(contract_id, *, reason=None, actor_id=None, expected_generation=None) -> Contract:
    """
    → CANCELLED. Idempotent for an already cancelled contract.

    Refused while any engagement has left PLANNED or any sub-contract is
    SIGNED. PLANNED engagements stay PLANNED: they can no longer start,
    so nothing under a non-SIGNED contract is ever past PLANNED. DRAFT
    sub-contracts are cancelled along with it.
    """
    with transaction("Contract"):
        contract = load_for_update(Contract, contract_id)
        if contract.status == ContractStatus.CANCELLED.value:
            return contract
        check_generation(contract, expected_generation)
        _require_counterpart(contract, actor_id, "cancel")

        engagements = db.session.execute(
            select(Engagement).where(Engagement.contract_id == contract.id).with_for_update()
        ).scalars().all()
        blocking = [e.id for e in engagements if e.status != EngagementStatus.PLANNED.value]
        if blocking:
            raise PreconditionError(
                f"Contract {contract.id} has {len(blocking)} engagement(s) past PLANNED"
            )
        subs = db.session.execute(
            select(Contract).where(Contract.parent_contract_id == contract.id).with_for_update()
        ).scalars().all()
        signed_subs = [s.id for s in subs if s.status == ContractStatus.SIGNED.value]
        if signed_subs:
            raise PreconditionError(
                f"Contract {contract.id} has {len(signed_subs)} signed sub-contract(s)"
            )

        now = datetime.now(timezone.utc)
        old = contract.status
        contract.status = ContractStatus.CANCELLED.value
        contract.cancelled_at = now
        contract.cancelled_by = actor_id
        contract.cancel_reason = reason
        for sub in subs:
            if sub.status == ContractStatus.DRAFT.value:
                sub.status = ContractStatus.CANCELLED.value
                sub.cancelled_at = now
                sub.cancel_reason = f"Parent contract {contract.id} cancelled"
        NotificationService.emit(
            EventType.CONTRACT_CANCELLED,
            entity_type="Contract",
            entity_id=contract.id,
            payload={"contractId": contract.id, "reason": reason, "cancelledBy": actor_id},
        )

    logger.info(
        "Contract cancelled",
        extra={"contract_id": contract.id, "from_status": old, "to_status": contract.status},
    )
    NotificationService.flush_outbox()
    return contract


def amend_terms(contract_id, terms, actor_id, *, expected_generation=None) -> Contract:
    """
    Replace termsJSON while the contract is still DRAFT.

    On a multi-party contract every member has to consent again.
    """
    normalized = validate_terms(terms)
    start_date, end_date = timeline_dates(normalized)

    with transaction("Contract"):
        contract = load_for_update(Contract, contract_id)
        check_generation(contract, expected_generation)
        if actor_id is None:
            raise AuthorizationError(actor_id, "An actor is required to amend terms")
        _require_counterpart(contract, actor_id, "amend")
        if contract.status != ContractStatus.DRAFT.value:
            raise InvalidStateError("Contract", contract.status, "amend terms of")
        source = dict((contract.terms_json or {}).get("source") or {})
        source["amendedBy"] = actor_id
        snapshot = contract_snapshot(normalized, source=source)
        if contract.is_multi_party:
            # Members consented to the old terms
            snapshot["parties"] = _member_terms(contract)
            snapshot["governance"] = contract.governance_json
            for member in contract.parties:
                member.consent_status = ConsentStatus.PENDING.value
                member.consented_at = None
        contract.terms_json = snapshot
        contract.start_date = start_date
        contract.end_date = end_date

    logger.info("Contract terms amended", extra={"contract_id": contract.id, "party_id": actor_id})
    return contract


# ── Query ────────────────────────────────────────────────────────────────────


def get(contract_id) -> Contract:
    return get_or_raise(Contract, contract_id)


def get_for_proposal(proposal_id):
    """Return the contract derived from a proposal, or None."""
    return _find_by_source(proposal_id)


def list_by_party(party_id, role=None):
    """
    Contracts the party is involved in.

    role: BUYER | PROVIDER | MEMBER (listed on a multi-party contract);
    None matches any of them.
    """
    is_member = Contract.parties.any(ContractParty.party_id == party_id)
    if role == "BUYER":
        cond = Contract.buyer_party_id == party_id
    elif role == "PROVIDER":
        cond = Contract.provider_party_id == party_id
    elif role == "MEMBER":
        cond = is_member
    elif role is None:
        cond = or_(
            Contract.buyer_party_id == party_id, Contract.provider_party_id == party_id, is_member,
        )
    else:
        raise ValidationError(f"Invalid role: {role}", details={"role": "BUYER | PROVIDER | MEMBER"})
    return db.session.execute(
        select(Contract).where(cond).order_by(Contract.created_at, Contract.id)
    ).scalars().all()


def list_by_scope(scope_type, scope_id):
    return db.session.execute(
        select(Contract)
        .where(Contract.scope_type == scope_type, Contract.scope_id == scope_id)
        .order_by(Contract.created_at, Contract.id)
    ).scalars().all()


def list_sub_contracts(parent_contract_id):
    get_or_raise(Contract, parent_contract_id)
    return db.session.execute(
        select(Contract)
        .where(Contract.parent_contract_id == parent_contract_id)
        .order_by(Contract.created_at, Contract.id)
    ).scalars().all()
