"""Request and response models for the ad-spend billing API.

Money is carried as ``Decimal`` end to end; FastAPI serialises it as a
string in JSON so no precision is lost on the way to the client.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from adspend_core.models.account import AccountStatus, CreditAccount, LedgerEntry, PaymentStatus
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Customer endpoints
# ---------------------------------------------------------------------------


class OpenAccountRequest(BaseModel):
    """Request body for ``POST /billing/ad-spend/account``.

    The card charged for the opening credit is the one on file with the
    payment processor; it is never taken from the request.
    """

    daily_budget: Decimal = Field(
        ...,
        gt=0,
        max_digits=12,
        decimal_places=2,
        description="Intended daily ad spend; the prepaid total is capped at the maximum top-up.",
    )
    days: int | None = Field(
        default=None,
        ge=1,
        le=90,
        description="Days of budget to prepay; defaults to the configured prepaid days.",
    )


class AccountResponse(BaseModel):
    """Public view of a credit account."""

    account_id: str
    customer_id: str
    initial_credit_amount: Decimal
    current_balance: Decimal
    status: AccountStatus
    payment_status: PaymentStatus
    failed_charge_count: int
    grace_period_ends_at: datetime | None = None
    campaigns_paused_at: datetime | None = None
    last_successful_charge_at: datetime | None = None
    suspension_reason: str | None = None
    integrity_hold: bool = False
    currency: str = "USD"
    created_at: datetime | None = None

    @classmethod
    def from_account(cls, account: CreditAccount) -> AccountResponse:
        return cls(
            account_id=account.account_id,
            customer_id=account.customer_id,
            initial_credit_amount=account.initial_credit_amount,
            current_balance=account.current_balance,
            status=account.effective_status,
            payment_status=account.payment_status,
            failed_charge_count=account.failed_charge_count,
            grace_period_ends_at=account.grace_period_ends_at,
            campaigns_paused_at=account.campaigns_paused_at,
            last_successful_charge_at=account.last_successful_charge_at,
            suspension_reason=account.suspension_reason,
            integrity_hold=account.integrity_hold_at is not None,
            currency=account.currency,
            created_at=account.created_at,
        )


class BalanceResponse(BaseModel):
    """Response for ``GET /billing/ad-spend/balance``."""

    account_id: str
    current_balance: Decimal
    initial_credit_amount: Decimal
    status: AccountStatus
    payment_status: PaymentStatus
    budget_multiplier: float
    can_run_campaigns: bool
    is_in_grace_period: bool
    grace_period_ends_at: datetime | None = None
    average_daily_spend: Decimal
    days_remaining: Decimal | None = Field(
        default=None,
        description="Null when there is no recent spend.",
    )
    last_successful_charge_at: datetime | None = None


class TransactionResponse(BaseModel):
    """One ledger entry."""

    entry_id: str
    sequence: int
    entry_type: str
    amount: Decimal
    balance_after: Decimal
    description: str | None = None
    external_reference: str | None = None
    campaign_id: str | None = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> TransactionResponse:
        return cls(
            entry_id=entry.entry_id,
            sequence=entry.sequence,
            entry_type=entry.entry_type.value,
            amount=entry.amount,
            balance_after=entry.balance_after,
            description=entry.description,
            external_reference=entry.external_reference,
            campaign_id=entry.campaign_id,
            created_at=entry.created_at,
        )


class TransactionListResponse(BaseModel):
    """Paginated ledger history, newest first."""

    transactions: list[TransactionResponse] = Field(default_factory=list)
    total: int
    limit: int
    offset: int


class AddCreditRequest(BaseModel):
    """Request body for ``POST /billing/ad-spend/add-credit``."""

    amount: Decimal = Field(..., gt=0, description="Top-up amount, within the configured bounds.")


class PaymentResponse(BaseModel):
    """Outcome of a charge-backed request that succeeded."""

    success: bool
    message: str
    amount: Decimal
    new_balance: Decimal | None = None
    charge_id: str | None = None
    payment_status: PaymentStatus | None = None


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


class DailyRunRequest(BaseModel):
    """Request body for ``POST /admin/billing/daily-run``."""

    period: date = Field(..., description="The day whose spend is being billed.")
    spend: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Reported spend keyed by customer id.",
    )


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class AdjustRequest(BaseModel):
    """Signed administrative correction."""

    amount: Decimal = Field(..., description="Positive to add, negative to remove.")
    description: str = Field(..., min_length=1, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class GraceSweepResponse(BaseModel):
    expired: int
    account_ids: list[str] = Field(default_factory=list)
