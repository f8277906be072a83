"""Domain models for the ad-spend credit ledger."""

from adspend_core.models.account import (
    AccountSnapshot,
    AccountStatus,
    CreditAccount,
    LedgerEntry,
    LedgerEntryType,
    PaymentStatus,
    ReconciliationReport,
)

__all__ = [
    "AccountSnapshot",
    "AccountStatus",
    "CreditAccount",
    "LedgerEntry",
    "LedgerEntryType",
    "PaymentStatus",
    "ReconciliationReport",
]
