"""Exception hierarchy for the billing core.

Insufficient funds and processor failures are *not* exceptions: ``deduct``
returns ``False`` and charges return a result object.  Exceptions are kept
for lookups that miss, caller mistakes, lost updates and integrity failures.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing core errors."""


class AccountNotFoundError(BillingError):
    """No credit account matches the given identifier."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Credit account not found: {key}")
        self.key = key


class AccountAlreadyExistsError(BillingError):
    """The customer already owns a credit account."""

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Customer {customer_id} already has a credit account")
        self.customer_id = customer_id


class InvalidAmountError(BillingError, ValueError):
    """An amount is negative, zero where forbidden, or outside allowed bounds."""


class ConcurrencyConflictError(BillingError):
    """A concurrent writer changed the account between read and write."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Concurrent update detected on credit account {account_id}")
        self.account_id = account_id


class LedgerInvariantError(BillingError):
    """The ledger no longer reconciles with the account balance.

    Fatal for the affected account: once raised, the account carries an
    integrity hold and refuses further mutation until an operator clears it.
    """

    def __init__(self, account_id: str, expected: object, actual: object) -> None:
        super().__init__(
            f"Ledger invariant violated on credit account {account_id}: "
            f"ledger replay gives {expected}, account balance is {actual}"
        )
        self.account_id = account_id
        self.expected = expected
        self.actual = actual


class IntegrityHoldError(LedgerInvariantError):
    """The account is frozen after an earlier invariant violation."""

    def __init__(self, account_id: str, balance: object) -> None:
        BillingError.__init__(
            self,
            f"Credit account {account_id} is under an integrity hold; "
            "mutations are refused until it reconciles",
        )
        self.account_id = account_id
        self.expected = None
        self.actual = balance


class PaymentProfileInUseError(BillingError):
    """The processor customer is already bound to another credit account."""

    def __init__(self, stripe_customer_id: str) -> None:
        super().__init__(f"Payment profile {stripe_customer_id} is already linked to a credit account")
        self.stripe_customer_id = stripe_customer_id
