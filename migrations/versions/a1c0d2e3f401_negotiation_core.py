"""Negotiation core — opportunities, proposals, contracts, engagements, milestones

Revision ID: a1c0d2e3f401
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c0d2e3f401"
down_revision = None
branch_labels = None
depends_on = None


def _aggregate_columns():
    """id / generation / timestamps shared by every aggregate table."""
    return [
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    # ── Scope hierarchy ──
    op.create_table(
        "scope_nodes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("scope_type", sa.String(30), nullable=False),
        sa.Column("parent_id", sa.String(64), sa.ForeignKey("scope_nodes.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "scope_type IN ('OPPORTUNITY', 'SERVICE_REQUEST', 'PROJECT', 'MEGA_PROJECT', "
            "'SUB_PROJECT', 'PHASE', 'WORK_PACKAGE')",
            name="ck_scope_nodes_type",
        ),
    )
    op.create_index("ix_scope_nodes_parent_id", "scope_nodes", ["parent_id"])

    # ── Opportunities ──
    op.create_table(
        "opportunities",
        *_aggregate_columns(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("intent", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("scope_type", sa.String(30), nullable=False),
        sa.Column("scope_id", sa.String(64), nullable=False),
        sa.Column("location", sa.JSON(), nullable=True),
        sa.Column("payment_terms", sa.JSON(), nullable=True),
        sa.Column("skills_tags", sa.JSON(), nullable=False),
        sa.Column("service_items", sa.JSON(), nullable=False),
        sa.Column("creator_party_id", sa.String(64), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by_proposal_id", sa.String(36), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_reason", sa.Text(), nullable=True),
        sa.CheckConstraint("status IN ('DRAFT', 'PUBLISHED', 'CLOSED')", name="ck_opportunities_status"),
        sa.CheckConstraint(
            "intent IN ('REQUEST_SERVICE', 'OFFER_SERVICE', 'BOTH')", name="ck_opportunities_intent",
        ),
    )
    op.create_index("ix_opportunities_scope_id", "opportunities", ["scope_id"])
    op.create_index("ix_opportunities_creator_party_id", "opportunities", ["creator_party_id"])
    op.create_index("idx_opportunities_status_intent", "opportunities", ["status", "intent"])

    # ── Proposals ──
    op.create_table(
        "proposals",
        *_aggregate_columns(),
        sa.Column("opportunity_id", sa.String(36), sa.ForeignKey("opportunities.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("initiator_party_id", sa.String(64), nullable=False),
        sa.Column("receiver_party_id", sa.String(64), nullable=False),
        sa.Column("initiator_side", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="SUBMITTED"),
        sa.Column("total", sa.Numeric(16, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_terms", sa.JSON(), nullable=True),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("owner_accepted_version", sa.Integer(), nullable=True),
        sa.Column("owner_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("other_party_accepted_version", sa.Integer(), nullable=True),
        sa.Column("other_party_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mutually_accepted_version", sa.Integer(), nullable=True),
        sa.Column("final_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_by", sa.String(64), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('SUBMITTED', 'UNDER_REVIEW', 'CHANGES_REQUESTED', 'REJECTED', 'FINAL_ACCEPTED')",
            name="ck_proposals_status",
        ),
        sa.CheckConstraint("initiator_side IN ('BUYER', 'PROVIDER')", name="ck_proposals_side"),
    )
    op.create_index("ix_proposals_opportunity_id", "proposals", ["opportunity_id"])
    op.create_index("ix_proposals_initiator_party_id", "proposals", ["initiator_party_id"])
    op.create_index("ix_proposals_receiver_party_id", "proposals", ["receiver_party_id"])
    op.create_index("idx_proposals_opportunity_status", "proposals", ["opportunity_id", "status"])

    op.create_table(
        "proposal_versions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("proposal_id", sa.String(36), sa.ForeignKey("proposals.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("terms", sa.JSON(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("changed_fields", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("proposal_id", "version", name="uq_proposal_versions_proposal_version"),
    )
    op.create_index("ix_proposal_versions_proposal_id", "proposal_versions", ["proposal_id"])

    # ── Contracts ──
    op.create_table(
        "contracts",
        *_aggregate_columns(),
        sa.Column("contract_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("source_proposal_id", sa.String(36), sa.ForeignKey("proposals.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("opportunity_id", sa.String(36), sa.ForeignKey("opportunities.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("parent_contract_id", sa.String(36), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("scope_type", sa.String(30), nullable=False),
        sa.Column("scope_id", sa.String(64), nullable=False),
        sa.Column("buyer_party_id", sa.String(64), nullable=False),
        sa.Column("buyer_party_type", sa.String(30), nullable=False),
        sa.Column("provider_party_id", sa.String(64), nullable=False),
        sa.Column("provider_party_type", sa.String(30), nullable=False),
        sa.Column("terms_json", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_by", sa.String(64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("source_proposal_id", name="uq_contracts_source_proposal"),
        sa.CheckConstraint("status IN ('DRAFT', 'SIGNED', 'CANCELLED')", name="ck_contracts_status"),
        sa.CheckConstraint(
            "contract_type IN ('PROJECT_CONTRACT', 'MEGA_PROJECT_CONTRACT', 'SERVICE_CONTRACT', "
            "'ADVISORY_CONTRACT', 'SUB_CONTRACT')",
            name="ck_contracts_type",
        ),
    )
    op.create_index("ix_contracts_opportunity_id", "contracts", ["opportunity_id"])
    op.create_index("ix_contracts_parent_contract_id", "contracts", ["parent_contract_id"])
    op.create_index("ix_contracts_buyer_party_id", "contracts", ["buyer_party_id"])
    op.create_index("ix_contracts_provider_party_id", "contracts", ["provider_party_id"])
    op.create_index("idx_contracts_scope", "contracts", ["scope_type", "scope_id"])

    # ── Engagements ──
    op.create_table(
        "engagements",
        *_aggregate_columns(),
        sa.Column("contract_id", sa.String(36), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("engagement_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PLANNED"),
        sa.Column("assigned_scope_type", sa.String(30), nullable=False),
        sa.Column("assigned_scope_id", sa.String(64), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('PLANNED', 'ACTIVE', 'COMPLETED', 'CANCELLED')", name="ck_engagements_status",
        ),
        sa.CheckConstraint(
            "engagement_type IN ('PROJECT_EXECUTION', 'SERVICE_DELIVERY', 'ADVISORY')",
            name="ck_engagements_type",
        ),
        sa.CheckConstraint(
            "status <> 'ACTIVE' OR started_at IS NOT NULL", name="ck_engagements_active_started",
        ),
    )
    op.create_index("ix_engagements_contract_id", "engagements", ["contract_id"])
    op.create_index("idx_engagements_contract_status", "engagements", ["contract_id", "status"])

    # ── Milestones ──
    op.create_table(
        "milestones",
        *_aggregate_columns(),
        sa.Column("engagement_id", sa.String(36), sa.ForeignKey("engagements.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("contract_id", sa.String(36), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("milestone_type", sa.String(20), nullable=False, server_default="DELIVERABLE"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('PENDING', 'IN_PROGRESS', 'COMPLETED')", name="ck_milestones_status"),
        sa.CheckConstraint("milestone_type IN ('DELIVERABLE', 'MILESTONE')", name="ck_milestones_type"),
    )
    op.create_index("ix_milestones_engagement_id", "milestones", ["engagement_id"])
    op.create_index("ix_milestones_contract_id", "milestones", ["contract_id"])
    op.create_index("idx_milestones_engagement_status", "milestones", ["engagement_id", "status"])

    # ── Domain event outbox ──
    op.create_table(
        "domain_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
    )
    op.create_index("idx_domain_events_pending", "domain_events", ["dispatched_at", "occurred_at"])
    op.create_index("idx_domain_events_entity", "domain_events", ["entity_type", "entity_id"])


def downgrade():
    op.drop_table("domain_events")
    op.drop_table("milestones")
    op.drop_table("engagements")
    op.drop_table("contracts")
    op.drop_table("proposal_versions")
    op.drop_table("proposals")
    op.drop_table("opportunities")
    op.drop_table("scope_nodes")
