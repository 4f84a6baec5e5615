"""multi_party_contracts

Adds SPV / JV / consortium contracts: member rows with role, share and
consent, governance JSON on contracts, the new contract types, and a
scope index for engagement lookups by assigned scope.

Revision ID: b7e4c1d9a2f3
Revises: a1c0d2e3f401
Create Date: 2026-10-19 14:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "b7e4c1d9a2f3"
down_revision = "a1c0d2e3f401"
branch_labels = None
depends_on = None


OLD_CONTRACT_TYPES = (
    "contract_type IN ('PROJECT_CONTRACT', 'MEGA_PROJECT_CONTRACT', 'SERVICE_CONTRACT', "
    "'ADVISORY_CONTRACT', 'SUB_CONTRACT')"
)
NEW_CONTRACT_TYPES = (
    "contract_type IN ('PROJECT_CONTRACT', 'MEGA_PROJECT_CONTRACT', 'SERVICE_CONTRACT', "
    "'ADVISORY_CONTRACT', 'SUB_CONTRACT', 'SPV_CONTRACT', 'JV_CONTRACT', "
    "'CONSORTIUM_CONTRACT', 'MULTI_PARTY_CONTRACT')"
)


def upgrade():
    with op.batch_alter_table("contracts") as batch_op:
        batch_op.add_column(
            sa.Column("is_multi_party", sa.Boolean(), nullable=False, server_default=sa.false())
        )
        batch_op.add_column(sa.Column("governance_json", sa.JSON(), nullable=True))
        batch_op.drop_constraint("ck_contracts_type", type_="check")
        batch_op.create_check_constraint("ck_contracts_type", NEW_CONTRACT_TYPES)

    op.create_table(
        "contract_parties",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("contract_id", sa.String(36), sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("party_id", sa.String(64), nullable=False),
        sa.Column("party_type", sa.String(30), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("share", sa.Float(), nullable=False),
        sa.Column("consent_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("consented_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("contract_id", "party_id", name="uq_contract_parties_member"),
        sa.CheckConstraint(
            "role IN ('OWNER', 'LEAD', 'PARTNER', 'MEMBER')", name="ck_contract_parties_role",
        ),
        sa.CheckConstraint(
            "consent_status IN ('PENDING', 'CONSENTED')", name="ck_contract_parties_consent",
        ),
        sa.CheckConstraint("share > 0 AND share <= 100", name="ck_contract_parties_share"),
    )
    op.create_index("ix_contract_parties_contract_id", "contract_parties", ["contract_id"])
    op.create_index("ix_contract_parties_party_id", "contract_parties", ["party_id"])

    op.create_index(
        "idx_engagements_scope", "engagements", ["assigned_scope_type", "assigned_scope_id"],
    )


def downgrade():
    op.drop_index("idx_engagements_scope", table_name="engagements")
    op.drop_table("contract_parties")
    with op.batch_alter_table("contracts") as batch_op:
        batch_op.drop_constraint("ck_contracts_type", type_="check")
        batch_op.create_check_constraint("ck_contracts_type", OLD_CONTRACT_TYPES)
        batch_op.drop_column("governance_json")
        batch_op.drop_column("is_multi_party")
