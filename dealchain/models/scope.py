"""
Scope hierarchy — the locus a Contract or Engagement is bound to.

Scopes are identified by the caller's own ids (project / sub-project /
work package ids) and registered here with their parent, so containment
can be checked at write time:

    MEGA_PROJECT ──▶ PROJECT ──▶ SUB_PROJECT ──▶ PHASE ──▶ WORK_PACKAGE

Registration is an idempotent upsert (services.scope_registry.upsert);
the negotiation aggregates never create scope rows themselves.
"""

from enum import Enum

from dealchain.models import db
from dealchain.models.base import _utcnow, check_in, iso


class ScopeType(str, Enum):
    OPPORTUNITY = "OPPORTUNITY"
    SERVICE_REQUEST = "SERVICE_REQUEST"
    PROJECT = "PROJECT"
    MEGA_PROJECT = "MEGA_PROJECT"
    SUB_PROJECT = "SUB_PROJECT"
    PHASE = "PHASE"
    WORK_PACKAGE = "WORK_PACKAGE"


SCOPE_TYPES = tuple(t.value for t in ScopeType)


class ScopeNode(db.Model):
    """One node of the scope tree."""

    __tablename__ = "scope_nodes"
    __table_args__ = (
        db.CheckConstraint(check_in("scope_type", SCOPE_TYPES), name="ck_scope_nodes_type"),
    )

    id = db.Column(db.String(64), primary_key=True, comment="Caller-supplied scope id")
    scope_type = db.Column(db.String(30), nullable=False)
    parent_id = db.Column(
        db.String(64), db.ForeignKey("scope_nodes.id", ondelete="RESTRICT"),
        nullable=True, index=True,
    )
    name = db.Column(db.String(255), nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    parent = db.relationship("ScopeNode", remote_side=[id], backref="children")

    def to_dict(self):
        return {
            "id": self.id,
            "scopeType": self.scope_type,
            "parentId": self.parent_id,
            "name": self.name,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ScopeNode {self.id} {self.scope_type}>"
