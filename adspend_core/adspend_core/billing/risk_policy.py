"""Pure risk decisions over a :class:`CreditAccount` snapshot.

``budget_multiplier`` and ``can_run_campaigns`` are independent answers.
The multiplier throttles pending spend; ``can_run_campaigns`` is the hard
gate.  A FAILED account still has a non-zero multiplier but may not run
campaigns.

Multiplier priority (first match wins):

==========================================  ======
Condition                                   Value
==========================================  ======
payment GRACE_PERIOD, grace not expired     0.5
payment FAILED                              0.25
payment PAUSED or administrative hold       0.0
balance status LOW_BALANCE                  0.75
otherwise                                   1.0
==========================================  ======
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from adspend_core.billing.account_state import to_money
from adspend_core.models.account import AccountStatus, CreditAccount, PaymentStatus

GRACE_PERIOD_MULTIPLIER = 0.5
FAILED_MULTIPLIER = 0.25
HALTED_MULTIPLIER = 0.0
LOW_BALANCE_MULTIPLIER = 0.75
FULL_MULTIPLIER = 1.0


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(UTC)


def is_in_grace_period(account: CreditAccount, now: datetime | None = None) -> bool:
    """True while the account is in GRACE_PERIOD and the window has not elapsed."""
    return (
        account.payment_status == PaymentStatus.GRACE_PERIOD
        and account.grace_period_ends_at is not None
        and _now(now) < account.grace_period_ends_at
    )


def is_in_good_standing(account: CreditAccount) -> bool:
    """Payment is CURRENT or in grace, and no administrative hold is set."""
    return (
        account.payment_status in (PaymentStatus.CURRENT, PaymentStatus.GRACE_PERIOD)
        and not account.is_suspended
    )


def can_run_campaigns(account: CreditAccount) -> bool:
    """Hard gate consulted before any spend or bidding decision."""
    return is_in_good_standing(account) and account.current_balance > 0 and not account.is_suspended


def budget_multiplier(account: CreditAccount, now: datetime | None = None) -> float:
    """Scalar in [0, 1] applied to a campaign's intended daily budget."""
    if is_in_grace_period(account, now):
        return GRACE_PERIOD_MULTIPLIER
    if account.payment_status == PaymentStatus.FAILED:
        return FAILED_MULTIPLIER
    if account.payment_status == PaymentStatus.PAUSED or account.is_suspended:
        return HALTED_MULTIPLIER
    if account.effective_status == AccountStatus.LOW_BALANCE:
        return LOW_BALANCE_MULTIPLIER
    return FULL_MULTIPLIER


def calculate_initial_credit(daily_budget: Decimal | int | float | str, days: int = 7) -> Decimal:
    """Prepaid credit captured up front: ``daily_budget * days``."""
    if days < 1:
        raise ValueError(f"days must be >= 1, got {days}")
    if isinstance(daily_budget, float):
        daily_budget = str(daily_budget)
    return to_money(Decimal(daily_budget) * days)


def replenishment_amount(
    average_spend: Decimal,
    minimum: Decimal = Decimal("50"),
    days: int = 7,
) -> Decimal:
    """Size of a replenishment charge: ``max(minimum, average_spend * days)``."""
    return max(to_money(minimum), calculate_initial_credit(average_spend, days))
