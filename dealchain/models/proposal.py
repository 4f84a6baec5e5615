"""
Proposal — a versioned, negotiated offer against an Opportunity.

Models:
    - Proposal:         the negotiation aggregate (status + acceptance state)
    - ProposalVersion:  append-only snapshot of terms, one row per version

Architecture:
    Opportunity ──1:N──▶ Proposal ──1:N──▶ ProposalVersion

Roles:
    OWNER  — the receiver, i.e. the party that created the Opportunity
    OTHER  — the initiator who submitted the Proposal

Lifecycle:
    SUBMITTED | UNDER_REVIEW | CHANGES_REQUESTED  (negotiating, any order)
        ──▶ FINAL_ACCEPTED   (one-way gate, both roles accepted currentVersion)
        ──▶ REJECTED         (terminal)

Invariants kept by services.proposal_negotiator:
    current_version == number of ProposalVersion rows
    mutually_accepted_version set iff owner == other accepted version (non-null)
    FINAL_ACCEPTED iff mutually_accepted_version == current_version
"""

from enum import Enum

from sqlalchemy import event

from dealchain.core.exceptions import InvalidStateError
from dealchain.models import db
from dealchain.models.base import AggregateModel, _utcnow, _uuid, check_in, iso


class ProposalStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    REJECTED = "REJECTED"
    FINAL_ACCEPTED = "FINAL_ACCEPTED"


class PartyRole(str, Enum):
    OWNER = "OWNER"
    OTHER = "OTHER"


class InitiatorSide(str, Enum):
    BUYER = "BUYER"
    PROVIDER = "PROVIDER"


PROPOSAL_STATUSES = tuple(s.value for s in ProposalStatus)
INITIATOR_SIDES = tuple(s.value for s in InitiatorSide)

NEGOTIATING_STATUSES = ("SUBMITTED", "UNDER_REVIEW", "CHANGES_REQUESTED")
TERMINAL_STATUSES = ("REJECTED", "FINAL_ACCEPTED")


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

_FROM_NEGOTIATING = ["UNDER_REVIEW", "CHANGES_REQUESTED", "FINAL_ACCEPTED", "REJECTED"]

PROPOSAL_TRANSITIONS = {
    "SUBMITTED":         _FROM_NEGOTIATING,
    "UNDER_REVIEW":      _FROM_NEGOTIATING,
    "CHANGES_REQUESTED": _FROM_NEGOTIATING,
    "REJECTED":          [],
    "FINAL_ACCEPTED":    [],
}


def validate_proposal_transition(old_status, new_status):
    """Return True if Proposal status transition is valid."""
    return new_status in PROPOSAL_TRANSITIONS.get(old_status, [])


# Term keys compared between versions (see changed_fields / compare_versions)
PRICING_FIELDS = ("total", "currency")
TERM_FIELDS = (
    "total", "currency", "paymentTerms", "timeline",
    "servicesOffered", "servicesRequested", "conditions",
)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Proposal
# ═════════════════════════════════════════════════════════════════════════════


class Proposal(AggregateModel):
    """Negotiation aggregate between an initiator and the opportunity owner."""

    __tablename__ = "proposals"
    __table_args__ = (
        db.CheckConstraint(check_in("status", PROPOSAL_STATUSES), name="ck_proposals_status"),
        db.CheckConstraint(check_in("initiator_side", INITIATOR_SIDES), name="ck_proposals_side"),
        db.Index("idx_proposals_opportunity_status", "opportunity_id", "status"),
    )

    opportunity_id = db.Column(
        db.String(36), db.ForeignKey("opportunities.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    initiator_party_id = db.Column(db.String(64), nullable=False, index=True)
    receiver_party_id = db.Column(db.String(64), nullable=False, index=True)
    initiator_side = db.Column(
        db.String(10), nullable=False,
        comment="BUYER | PROVIDER: the initiator's role in the resulting contract",
    )
    status = db.Column(db.String(20), nullable=False, default=ProposalStatus.SUBMITTED.value)

    # Denormalized from the current version
    total = db.Column(db.Numeric(16, 2, asdecimal=False), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    payment_terms = db.Column(db.JSON, nullable=True)

    current_version = db.Column(db.Integer, nullable=False, default=0)

    # Acceptance is always version-scoped
    owner_accepted_version = db.Column(db.Integer, nullable=True)
    owner_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    other_party_accepted_version = db.Column(db.Integer, nullable=True)
    other_party_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    mutually_accepted_version = db.Column(db.Integer, nullable=True)
    final_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    rejection_reason = db.Column(db.Text, nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)

    opportunity = db.relationship("Opportunity", back_populates="proposals")
    versions = db.relationship(
        "ProposalVersion", back_populates="proposal",
        order_by="ProposalVersion.version",
        cascade="save-update, merge",
    )

    def party_for_role(self, role):
        """Return the party id holding ``role`` on this proposal."""
        return self.receiver_party_id if role == PartyRole.OWNER.value else self.initiator_party_id

    def role_of(self, party_id):
        """Return OWNER / OTHER for a counterpart, None for anyone else."""
        if party_id == self.receiver_party_id:
            return PartyRole.OWNER.value
        if party_id == self.initiator_party_id:
            return PartyRole.OTHER.value
        return None

    @property
    def latest_version(self):
        return self.versions[-1] if self.versions else None

    @property
    def buyer_party_id(self):
        if self.initiator_side == InitiatorSide.BUYER.value:
            return self.initiator_party_id
        return self.receiver_party_id

    @property
    def provider_party_id(self):
        if self.initiator_side == InitiatorSide.PROVIDER.value:
            return self.initiator_party_id
        return self.receiver_party_id

    def to_dict(self, include_versions=True):
        d = {
            "id": self.id,
            "opportunityId": self.opportunity_id,
            "initiatorPartyId": self.initiator_party_id,
            "receiverPartyId": self.receiver_party_id,
            "initiatorSide": self.initiator_side,
            "status": self.status,
            "total": self.total,
            "currency": self.currency,
            "paymentTerms": self.payment_terms,
            "currentVersion": self.current_version,
            "acceptance": {
                "ownerAcceptedVersion": self.owner_accepted_version,
                "otherPartyAcceptedVersion": self.other_party_accepted_version,
                "mutuallyAcceptedVersion": self.mutually_accepted_version,
                "finalAcceptedAt": iso(self.final_accepted_at),
            },
            "rejectionReason": self.rejection_reason,
            "rejectedAt": iso(self.rejected_at),
            "generation": self.generation,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if include_versions:
            d["versions"] = [v.to_dict() for v in self.versions]
        return d

    def __repr__(self):
        return f"<Proposal {self.id} v{self.current_version} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProposalVersion
# ═════════════════════════════════════════════════════════════════════════════


class ProposalVersion(db.Model):
    """
    Immutable snapshot of proposal terms.

    Business rules:
    - Rows are NEVER updated or deleted (append-only history).
    - (proposal_id, version) is unique, so two concurrent counter-offers
      cannot both claim the same version number.
    - ``status`` records the proposal status this version put it into.
    """

    __tablename__ = "proposal_versions"
    __table_args__ = (
        db.UniqueConstraint("proposal_id", "version", name="uq_proposal_versions_proposal_version"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    terms = db.Column(db.JSON, nullable=False)
    comment = db.Column(db.Text, nullable=False, default="")
    created_by = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(20), nullable=False)
    changed_fields = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    proposal = db.relationship("Proposal", back_populates="versions")

    def to_dict(self):
        return {
            "version": self.version,
            "terms": self.terms,
            "comment": self.comment,
            "createdAt": iso(self.created_at),
            "createdBy": self.created_by,
            "status": self.status,
            "changedFields": list(self.changed_fields or []),
        }

    def __repr__(self):
        return f"<ProposalVersion {self.proposal_id} v{self.version}>"


@event.listens_for(ProposalVersion, "before_update")
def _block_version_update(mapper, connection, target):
    raise InvalidStateError("ProposalVersion", "APPENDED", "modify")


@event.listens_for(ProposalVersion, "before_delete")
def _block_version_delete(mapper, connection, target):
    raise InvalidStateError("ProposalVersion", "APPENDED", "delete")
