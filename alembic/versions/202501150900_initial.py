"""accounts and balance snapshots

Revision ID: 202501150900
Revises:
Create Date: 2025-01-15 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202501150900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("provider_item_id", sa.String(length=100), nullable=False),
        sa.Column("provider_access_token", sa.Text(), nullable=False),
        sa.Column("provider_account_id", sa.String(length=100), nullable=False),
        sa.Column("account_name", sa.String(length=200), nullable=True),
        sa.Column("account_type", sa.String(length=50), nullable=True),
        sa.Column("institution_name", sa.String(length=200), nullable=True),
        sa.Column(
            "is_inflow", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "is_outflow", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "needs_reauthentication",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "provider_item_id",
            "provider_account_id",
            name="uq_account_item_provider_account",
        ),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])
    op.create_index("ix_accounts_item", "accounts", ["provider_item_id"])

    op.create_table(
        "balance_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "account_id", "snapshot_date", name="uq_snapshot_account_date"
        ),
    )
    op.create_index("ix_snapshots_date", "balance_snapshots", ["snapshot_date"])


def downgrade() -> None:
    op.drop_index("ix_snapshots_date", table_name="balance_snapshots")
    op.drop_table("balance_snapshots")
    op.drop_index("ix_accounts_item", table_name="accounts")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
