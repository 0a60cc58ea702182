"""create crm tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _bookkeeping_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_user",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="user"),
        *_bookkeeping_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_user_organization_id", "crm_user", ["organization_id"], unique=False)

    op.create_table(
        "crm_company",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("domain", sa.Text(), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("size", sa.String(length=32), nullable=True),
        *_bookkeeping_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "name", name="uq_crm_company_org_name"),
        sa.UniqueConstraint("organization_id", "domain", name="uq_crm_company_org_domain"),
    )
    op.create_index("ix_crm_company_organization_id", "crm_company", ["organization_id"], unique=False)

    # References are plain columns; the integrity validator reports dangling ones.
    op.create_table(
        "crm_contact",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=36), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        *_bookkeeping_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "email", name="uq_crm_contact_org_email"),
    )
    op.create_index("ix_crm_contact_organization_id", "crm_contact", ["organization_id"], unique=False)
    op.create_index("ix_crm_contact_company_id", "crm_contact", ["company_id"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="lead"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("contact_id", sa.String(length=36), nullable=True),
        sa.Column("company_id", sa.String(length=36), nullable=True),
        sa.Column("owner_id", sa.String(length=36), nullable=False),
        *_bookkeeping_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_organization_id", "crm_deal", ["organization_id"], unique=False)
    op.create_index("ix_crm_deal_contact_id", "crm_deal", ["contact_id"], unique=False)
    op.create_index("ix_crm_deal_company_id", "crm_deal", ["company_id"], unique=False)

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("contact_id", sa.String(length=36), nullable=True),
        sa.Column("deal_id", sa.String(length=36), nullable=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        *_bookkeeping_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activity_organization_id", "crm_activity", ["organization_id"], unique=False)
    op.create_index("ix_crm_activity_contact_id", "crm_activity", ["contact_id"], unique=False)
    op.create_index("ix_crm_activity_deal_id", "crm_activity", ["deal_id"], unique=False)


def downgrade() -> None:
    for table in ("crm_activity", "crm_deal", "crm_contact", "crm_company", "crm_user"):
        op.drop_table(table)
