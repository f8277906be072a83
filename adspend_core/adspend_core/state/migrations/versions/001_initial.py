"""Initial schema for the ad-spend credit ledger.

Creates ``credit_accounts`` (one per customer, optimistic ``version``
counter) and the append-only ``ledger_entries`` table.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ------------------------------------------------------------------
    # credit_accounts
    # ------------------------------------------------------------------
    op.create_table(
        "credit_accounts",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("customer_id", sa.String(128), nullable=False),
        sa.Column("initial_credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("current_balance", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="current"),
        sa.Column("failed_charge_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("campaigns_paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_charge_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        sa.Column("integrity_hold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True),
        sa.Column("stripe_payment_method_id", sa.String(256), nullable=True),
        sa.Column("opening_charge_reference", sa.String(256), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "status IN ('active','low_balance','depleted')",
            name="ck_credit_accounts_status",
        ),
        sa.CheckConstraint(
            "payment_status IN ('current','grace_period','failed','paused')",
            name="ck_credit_accounts_payment_status",
        ),
        sa.CheckConstraint("current_balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.CheckConstraint("failed_charge_count >= 0", name="ck_credit_accounts_failed_count"),
    )
    op.create_index("ix_credit_accounts_customer", "credit_accounts", ["customer_id"], unique=True)
    op.create_index("ix_credit_accounts_payment_status", "credit_accounts", ["payment_status"])
    op.create_index(
        "ix_credit_accounts_stripe_customer", "credit_accounts", ["stripe_customer_id"], unique=True
    )

    # ------------------------------------------------------------------
    # ledger_entries
    # ------------------------------------------------------------------
    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.String(64), primary_key=True),
        sa.Column(
            "account_id",
            sa.String(64),
            sa.ForeignKey("credit_accounts.account_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("external_reference", sa.String(256), nullable=True),
        sa.Column("campaign_id", sa.String(128), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "entry_type IN ('credit','deduction','refund','adjustment')",
            name="ck_ledger_entries_entry_type",
        ),
        sa.UniqueConstraint("account_id", "sequence", name="uq_ledger_entries_account_sequence"),
    )
    op.create_index(
        "ix_ledger_entries_account_type_created",
        "ledger_entries",
        ["account_id", "entry_type", "created_at"],
    )
    op.create_index("ix_ledger_entries_external_reference", "ledger_entries", ["external_reference"])
    op.create_index("ix_ledger_entries_created", "ledger_entries", ["created_at"])

    # Ledger rows are immutable once written.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION ledger_entries_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries rows are append-only';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        "CREATE TRIGGER trg_ledger_entries_immutable BEFORE UPDATE OR DELETE ON ledger_entries "
        "FOR EACH ROW EXECUTE FUNCTION ledger_entries_immutable()"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_immutable ON ledger_entries")
    op.execute("DROP FUNCTION IF EXISTS ledger_entries_immutable()")
    op.drop_index("ix_ledger_entries_created")
    op.drop_index("ix_ledger_entries_external_reference")
    op.drop_index("ix_ledger_entries_account_type_created")
    op.drop_table("ledger_entries")
    op.drop_index("ix_credit_accounts_stripe_customer")
    op.drop_index("ix_credit_accounts_payment_status")
    op.drop_index("ix_credit_accounts_customer")
    op.drop_table("credit_accounts")
