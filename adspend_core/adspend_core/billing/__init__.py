"""Billing core: balance state, risk policy and the transactional orchestrator."""

from adspend_core.billing.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    BillingError,
    ConcurrencyConflictError,
    IntegrityHoldError,
    InvalidAmountError,
    LedgerInvariantError,
    PaymentProfileInUseError,
)
from adspend_core.billing.orchestrator import BillingOrchestrator

__all__ = [
    "AccountAlreadyExistsError",
    "AccountNotFoundError",
    "BillingError",
    "BillingOrchestrator",
    "ConcurrencyConflictError",
    "IntegrityHoldError",
    "InvalidAmountError",
    "LedgerInvariantError",
    "PaymentProfileInUseError",
]
