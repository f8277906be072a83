"""SQLAlchemy 2.0 ORM table definitions for the ad-spend credit ledger.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style.
The ``Base`` declarative base is exported for use by Alembic migrations and
the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Money columns: two decimal places, returned as ``Decimal``.
_Money = Numeric(12, 2, asdecimal=True)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always hands back UTC-aware values.

    SQLite stores timestamps without an offset and returns naive datetimes;
    they are re-tagged as UTC on the way out so comparisons with aware
    clocks never raise.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Credit accounts
# ---------------------------------------------------------------------------


class CreditAccountTable(Base):
    """One prepaid ad-spend account per customer.

    ``status`` holds only the derived balance status.  The administrative
    hold lives in ``suspended_at`` so that recomputing the status after a
    balance change can never clear a manual suspension.  ``version`` is the
    optimistic-concurrency counter checked on every UPDATE.
    """

    __tablename__ = "credit_accounts"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    initial_credit_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    current_balance: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="current")
    failed_charge_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    campaigns_paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_successful_charge_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    integrity_hold_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_payment_method_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    # Processor charge that funded initial_credit_amount.
    opening_charge_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','low_balance','depleted')",
            name="ck_credit_accounts_status",
        ),
        CheckConstraint(
            "payment_status IN ('current','grace_period','failed','paused')",
            name="ck_credit_accounts_payment_status",
        ),
        CheckConstraint("current_balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        CheckConstraint("failed_charge_count >= 0", name="ck_credit_accounts_failed_count"),
        Index("ix_credit_accounts_customer", "customer_id", unique=True),
        Index("ix_credit_accounts_payment_status", "payment_status"),
        Index("ix_credit_accounts_stripe_customer", "stripe_customer_id", unique=True),
    )


# ---------------------------------------------------------------------------
# Ledger entries
# ---------------------------------------------------------------------------


class LedgerEntryTable(Base):
    """Immutable, append-only record of a balance-affecting event.

    ``sequence`` orders entries within an account independently of clock
    resolution; replaying ``amount`` in sequence order from the account's
    ``initial_credit_amount`` must reproduce ``current_balance``.
    """

    __tablename__ = "ledger_entries"

    entry_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("credit_accounts.account_id", ondelete="RESTRICT"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('credit','deduction','refund','adjustment')",
            name="ck_ledger_entries_entry_type",
        ),
        UniqueConstraint("account_id", "sequence", name="uq_ledger_entries_account_sequence"),
        Index("ix_ledger_entries_account_type_created", "account_id", "entry_type", "created_at"),
        Index("ix_ledger_entries_external_reference", "external_reference"),
        Index("ix_ledger_entries_created", "created_at"),
    )
