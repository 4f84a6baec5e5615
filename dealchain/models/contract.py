"""
Contract — the binding agreement derived from a finalized Proposal.

Architecture:
    Proposal ──1:0..1──▶ Contract ──1:N──▶ Engagement
    Contract ──1:N──▶ Contract       (sub-contracts via parent_contract_id)
    Contract ──1:N──▶ ContractParty  (multi-party SPV / JV / consortium members)

Lifecycle:
    DRAFT ──▶ SIGNED ──▶ CANCELLED
      └────────────────▶ CANCELLED

Rules:
    - source_proposal_id is UNIQUE: at most one contract per proposal.
    - A sub-contract exists only under a SIGNED parent; its buyer is the
      parent's provider and its provider is a SUB_CONTRACTOR.
    - terms_json is a snapshot of the mutually accepted proposal version
      and is frozen once SIGNED.
    - A multi-party contract lists at least two members whose shares sum
      to 100; every member must consent before the buyer can sign.
"""

from enum import Enum

from sqlalchemy import event, inspect

from dealchain.core.exceptions import InvalidStateError
from dealchain.models import db
from dealchain.models.base import AggregateModel, check_in, iso


class ContractType(str, Enum):
    PROJECT_CONTRACT = "PROJECT_CONTRACT"
    MEGA_PROJECT_CONTRACT = "MEGA_PROJECT_CONTRACT"
    SERVICE_CONTRACT = "SERVICE_CONTRACT"
    ADVISORY_CONTRACT = "ADVISORY_CONTRACT"
    SUB_CONTRACT = "SUB_CONTRACT"
    SPV_CONTRACT = "SPV_CONTRACT"
    JV_CONTRACT = "JV_CONTRACT"
    CONSORTIUM_CONTRACT = "CONSORTIUM_CONTRACT"
    MULTI_PARTY_CONTRACT = "MULTI_PARTY_CONTRACT"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    SIGNED = "SIGNED"
    CANCELLED = "CANCELLED"


class MemberRole(str, Enum):
    OWNER = "OWNER"
    LEAD = "LEAD"
    PARTNER = "PARTNER"
    MEMBER = "MEMBER"


class ConsentStatus(str, Enum):
    PENDING = "PENDING"
    CONSENTED = "CONSENTED"


class PartyType(str, Enum):
    BENEFICIARY = "BENEFICIARY"
    VENDOR_CORPORATE = "VENDOR_CORPORATE"
    VENDOR_INDIVIDUAL = "VENDOR_INDIVIDUAL"
    SERVICE_PROVIDER = "SERVICE_PROVIDER"
    CONSULTANT = "CONSULTANT"
    SUB_CONTRACTOR = "SUB_CONTRACTOR"


CONTRACT_TYPES = tuple(t.value for t in ContractType)
CONTRACT_STATUSES = tuple(s.value for s in ContractStatus)
PARTY_TYPES = tuple(p.value for p in PartyType)
MEMBER_ROLES = tuple(r.value for r in MemberRole)
CONSENT_STATUSES = tuple(s.value for s in ConsentStatus)

MULTI_PARTY_CONTRACT_TYPES = frozenset({
    "SPV_CONTRACT", "JV_CONTRACT", "CONSORTIUM_CONTRACT", "MULTI_PARTY_CONTRACT",
})

BUYER_PARTY_TYPES = frozenset({"BENEFICIARY", "VENDOR_CORPORATE", "VENDOR_INDIVIDUAL"})
PROVIDER_PARTY_TYPES = frozenset({
    "VENDOR_CORPORATE", "VENDOR_INDIVIDUAL", "SERVICE_PROVIDER",
    "CONSULTANT", "SUB_CONTRACTOR",
})

# Scope type → contract type (a CONSULTANT provider always yields ADVISORY_CONTRACT)
SCOPE_CONTRACT_TYPES = {
    "MEGA_PROJECT":    "MEGA_PROJECT_CONTRACT",
    "PROJECT":         "PROJECT_CONTRACT",
    "SUB_PROJECT":     "PROJECT_CONTRACT",
    "PHASE":           "PROJECT_CONTRACT",
    "WORK_PACKAGE":    "PROJECT_CONTRACT",
    "SERVICE_REQUEST": "SERVICE_CONTRACT",
    "OPPORTUNITY":     "SERVICE_CONTRACT",
}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

CONTRACT_TRANSITIONS = {
    "DRAFT":     ["SIGNED", "CANCELLED"],
    "SIGNED":    ["CANCELLED"],
    "CANCELLED": [],
}


def validate_contract_transition(old_status, new_status):
    """Return True if Contract status transition is valid."""
    return new_status in CONTRACT_TRANSITIONS.get(old_status, [])


def derive_contract_type(scope_type, provider_party_type, *, is_sub_contract=False):
    """Pick the contract type for a scope / provider combination."""
    if is_sub_contract:
        return ContractType.SUB_CONTRACT.value
    if provider_party_type == PartyType.CONSULTANT.value:
        return ContractType.ADVISORY_CONTRACT.value
    return SCOPE_CONTRACT_TYPES.get(scope_type, ContractType.SERVICE_CONTRACT.value)


class Contract(AggregateModel):
    """Binding agreement between a buyer and a provider over a scope."""

    __tablename__ = "contracts"
    __table_args__ = (
        db.UniqueConstraint("source_proposal_id", name="uq_contracts_source_proposal"),
        db.CheckConstraint(check_in("status", CONTRACT_STATUSES), name="ck_contracts_status"),
        db.CheckConstraint(check_in("contract_type", CONTRACT_TYPES), name="ck_contracts_type"),
        db.Index("idx_contracts_scope", "scope_type", "scope_id"),
    )

    contract_type = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ContractStatus.DRAFT.value)

    source_proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=True, comment="NULL for sub-contracts",
    )
    opportunity_id = db.Column(
        db.String(36), db.ForeignKey("opportunities.id", ondelete="RESTRICT"),
        nullable=True, index=True,
    )
    parent_contract_id = db.Column(
        db.String(36), db.ForeignKey("contracts.id", ondelete="RESTRICT"),
        nullable=True, index=True,
    )

    scope_type = db.Column(db.String(30), nullable=False)
    scope_id = db.Column(db.String(64), nullable=False)

    buyer_party_id = db.Column(db.String(64), nullable=False, index=True)
    buyer_party_type = db.Column(db.String(30), nullable=False)
    provider_party_id = db.Column(db.String(64), nullable=False, index=True)
    provider_party_type = db.Column(db.String(30), nullable=False)

    terms_json = db.Column(db.JSON, nullable=False)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_by = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    # Multi-party (SPV / JV / consortium)
    is_multi_party = db.Column(db.Boolean, nullable=False, default=False)
    governance_json = db.Column(db.JSON, nullable=True)

    parent = db.relationship("Contract", remote_side="Contract.id", backref="sub_contracts")
    engagements = db.relationship("Engagement", back_populates="contract", lazy="dynamic")
    parties = db.relationship(
        "ContractParty", backref="contract",
        cascade="all, delete-orphan", order_by="ContractParty.position",
    )

    @property
    def is_sub_contract(self):
        return self.parent_contract_id is not None

    @property
    def pending_consents(self):
        """Party ids of multi-party members that have not consented yet."""
        return [p.party_id for p in self.parties if not p.has_consented]

    def to_dict(self):
        return {
            "id": self.id,
            "contractType": self.contract_type,
            "status": self.status,
            "sourceProposalId": self.source_proposal_id,
            "opportunityId": self.opportunity_id,
            "parentContractId": self.parent_contract_id,
            "scopeType": self.scope_type,
            "scopeId": self.scope_id,
            "buyerPartyId": self.buyer_party_id,
            "buyerPartyType": self.buyer_party_type,
            "providerPartyId": self.provider_party_id,
            "providerPartyType": self.provider_party_type,
            "termsJSON": self.terms_json,
            "startDate": iso(self.start_date),
            "endDate": iso(self.end_date),
            "signedAt": iso(self.signed_at),
            "signedBy": self.signed_by,
            "cancelledAt": iso(self.cancelled_at),
            "cancelReason": self.cancel_reason,
            "isMultiParty": self.is_multi_party,
            "governance": self.governance_json,
            "parties": [p.to_dict() for p in self.parties] if self.is_multi_party else [],
            "generation": self.generation,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Contract {self.id} {self.contract_type} {self.status}>"


@event.listens_for(Contract, "before_update")
def _freeze_signed_terms(mapper, connection, target):
    """Reject any termsJSON change once the contract has left DRAFT."""
    state = inspect(target)
    if not state.attrs.terms_json.history.has_changes():
        return
    status_history = state.attrs.status.history
    previous = status_history.deleted[0] if status_history.deleted else target.status
    if previous != ContractStatus.DRAFT.value:
        raise InvalidStateError("Contract", previous, "change terms of")


class ContractParty(db.Model):
    """
    One member of a multi-party contract.

    Shares are percentages; the members of a contract sum to 100.
    Consent is reset whenever the contract terms change.
    """

    __tablename__ = "contract_parties"
    __table_args__ = (
        db.UniqueConstraint("contract_id", "party_id", name="uq_contract_parties_member"),
        db.CheckConstraint(check_in("role", MEMBER_ROLES), name="ck_contract_parties_role"),
        db.CheckConstraint(
            check_in("consent_status", CONSENT_STATUSES), name="ck_contract_parties_consent",
        ),
        db.CheckConstraint("share > 0 AND share <= 100", name="ck_contract_parties_share"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    contract_id = db.Column(
        db.String(36), db.ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False, default=0, comment="Order as listed")
    party_id = db.Column(db.String(64), nullable=False, index=True)
    party_type = db.Column(db.String(30), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    share = db.Column(db.Float, nullable=False, comment="Percent, 0 < share <= 100")
    consent_status = db.Column(db.String(20), nullable=False, default=ConsentStatus.PENDING.value)
    consented_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def has_consented(self):
        return self.consent_status == ConsentStatus.CONSENTED.value

    def to_dict(self):
        return {
            "partyId": self.party_id,
            "partyType": self.party_type,
            "role": self.role,
            "share": self.share,
            "consentStatus": self.consent_status,
            "consentedAt": iso(self.consented_at),
        }

    def __repr__(self):
        return f"<ContractParty {self.party_id} {self.role} {self.share}%>"
