"""Balance-status recomputation for credit accounts.

Status is derived from two numbers only: the current balance and the
average daily spend over a trailing window of DEDUCTION entries.  The rule is
evaluated in a fixed order and the first match wins:

1. ``balance <= 0``                     -> ``DEPLETED``
2. ``days_remaining < threshold_days``  -> ``LOW_BALANCE``
3. otherwise                            -> ``ACTIVE``

``SUSPENDED`` is never produced here; it is an administrative hold stored
separately on the account so that recomputation cannot clear it.

The average always divides by the full window length, even for accounts
younger than the window.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from adspend_core.models.account import AccountStatus, CreditAccount, LedgerEntry, LedgerEntryType

_CENT = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize *value* to cents.  Floats go through ``str`` to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def average_daily_spend(
    entries: Iterable[LedgerEntry],
    now: datetime,
    window_days: int = 7,
) -> Decimal:
    """Return the trailing-window average of DEDUCTION amounts per day.

    Entries of other types, and deductions older than *window_days*, are
    ignored.  Returns ``Decimal(0)`` when there is no recent spend.
    """
    since = now - timedelta(days=window_days)
    total = Decimal("0")
    for entry in entries:
        if entry.entry_type != LedgerEntryType.DEDUCTION:
            continue
        if entry.created_at < since:
            continue
        total += abs(entry.amount)
    if total == 0:
        return Decimal("0")
    return total / Decimal(window_days)


def days_remaining(balance: Decimal, average_spend: Decimal) -> Decimal | None:
    """Days of spend the balance covers; ``None`` means unbounded (no spend)."""
    if average_spend <= 0:
        return None
    return balance / average_spend


def derive_status(
    balance: Decimal,
    remaining: Decimal | None,
    threshold_days: Decimal = Decimal("3"),
) -> AccountStatus:
    """Map balance and days remaining to ACTIVE, LOW_BALANCE or DEPLETED."""
    if balance <= 0:
        return AccountStatus.DEPLETED
    if remaining is not None and remaining < threshold_days:
        return AccountStatus.LOW_BALANCE
    return AccountStatus.ACTIVE


def effective_status(account: CreditAccount) -> AccountStatus:
    """SUSPENDED while the administrative hold is set, else the derived status."""
    return account.effective_status


def recompute_status(
    balance: Decimal,
    entries: Iterable[LedgerEntry],
    now: datetime,
    *,
    window_days: int = 7,
    threshold_days: Decimal = Decimal("3"),
) -> AccountStatus:
    """Convenience wrapper: average, days remaining and status in one call."""
    average = average_daily_spend(entries, now, window_days)
    return derive_status(balance, days_remaining(balance, average), threshold_days)
