"""Credit account and ledger entry domain models.

These are immutable snapshots built from the state store rows.  The pure
state and risk functions operate on them, so they can be unit-tested without
a database.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AccountStatus(str, Enum):
    """Balance health of a credit account.

    ``SUSPENDED`` is never derived from the balance; it is reported only
    while the administrative hold is set.
    """

    ACTIVE = "active"
    LOW_BALANCE = "low_balance"
    DEPLETED = "depleted"
    SUSPENDED = "suspended"


class PaymentStatus(str, Enum):
    """Payment health of a credit account."""

    CURRENT = "current"
    GRACE_PERIOD = "grace_period"
    FAILED = "failed"
    PAUSED = "paused"


class LedgerEntryType(str, Enum):
    """Kinds of balance-affecting events recorded in the ledger."""

    CREDIT = "credit"
    DEDUCTION = "deduction"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class CreditAccount(BaseModel):
    """Point-in-time view of a customer's prepaid ad-spend account."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    account_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    initial_credit_amount: Decimal
    current_balance: Decimal
    status: AccountStatus = Field(
        default=AccountStatus.ACTIVE,
        description="Derived balance status (never SUSPENDED).",
    )
    payment_status: PaymentStatus = PaymentStatus.CURRENT
    failed_charge_count: int = Field(default=0, ge=0)
    grace_period_ends_at: datetime | None = None
    campaigns_paused_at: datetime | None = None
    last_successful_charge_at: datetime | None = None
    suspended_at: datetime | None = None
    suspension_reason: str | None = None
    integrity_hold_at: datetime | None = None
    currency: str = "USD"
    stripe_customer_id: str | None = None
    stripe_payment_method_id: str | None = None
    opening_charge_reference: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_suspended(self) -> bool:
        """Whether the administrative hold is in effect."""
        return self.suspended_at is not None

    @property
    def effective_status(self) -> AccountStatus:
        """Status reported to collaborators; the hold overrides the derived value."""
        if self.is_suspended:
            return AccountStatus.SUSPENDED
        return self.status


class LedgerEntry(BaseModel):
    """One immutable, append-only ledger record.

    ``amount`` is signed: credits and refunds are positive, deductions are
    negative, adjustments carry either sign.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str
    account_id: str
    sequence: int = Field(..., ge=1)
    entry_type: LedgerEntryType
    amount: Decimal
    balance_after: Decimal
    description: str | None = None
    external_reference: str | None = None
    campaign_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> LedgerEntry:
        """Build an entry from a ``LedgerEntryTable`` row."""
        return cls(
            entry_id=row.entry_id,
            account_id=row.account_id,
            sequence=row.sequence,
            entry_type=LedgerEntryType(row.entry_type),
            amount=row.amount,
            balance_after=row.balance_after,
            description=row.description,
            external_reference=row.external_reference,
            campaign_id=row.campaign_id,
            metadata=row.metadata_json or {},
            created_at=row.created_at,
        )


class AccountSnapshot(BaseModel):
    """An account together with everything collaborators need to decide on spend."""

    model_config = ConfigDict(frozen=True)

    account: CreditAccount
    average_daily_spend: Decimal
    days_remaining: Decimal | None = Field(
        default=None,
        description="None when there is no recent spend (effectively unbounded).",
    )
    budget_multiplier: float
    can_run_campaigns: bool
    is_in_grace_period: bool


class ReconciliationReport(BaseModel):
    """Result of replaying an account's ledger against its stored balance."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    ledger_balance: Decimal
    account_balance: Decimal
    entry_count: int
    hold_cleared: bool = False
