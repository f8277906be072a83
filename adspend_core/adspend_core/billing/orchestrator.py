"""Transactional boundary for every balance and payment-state change.

Each mutation runs as one database transaction while holding the account's
in-process lock.  On PostgreSQL the account row is additionally read with
``SELECT ... FOR UPDATE``; on every backend the ``version`` column turns a
lost update into :class:`ConcurrencyConflictError`, and the whole operation
is re-run once before the conflict is surfaced.

Before any mutation the latest ledger entry's ``balance_after`` is compared
with the account balance.  A mismatch places the account under an integrity
hold, logs at CRITICAL and raises :class:`LedgerInvariantError`; held
accounts refuse further mutation until :meth:`BillingOrchestrator.reconcile`
succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from adspend_core.billing import account_state, risk_policy
from adspend_core.billing.account_state import to_money
from adspend_core.billing.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    ConcurrencyConflictError,
    IntegrityHoldError,
    InvalidAmountError,
    LedgerInvariantError,
    PaymentProfileInUseError,
)
from adspend_core.billing.locks import AccountLockRegistry
from adspend_core.billing.retry import RetryConfig, async_retry_with_backoff
from adspend_core.config import BillingPolicy
from adspend_core.models.account import (
    AccountSnapshot,
    AccountStatus,
    CreditAccount,
    LedgerEntry,
    LedgerEntryType,
    PaymentStatus,
    ReconciliationReport,
)
from adspend_core.state.repository import CreditAccountRepository, LedgerEntryRepository
from adspend_core.state.tables import CreditAccountTable

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

# Work done inside a locked transaction: (row, accounts, ledger, now) -> T
_Mutation = Callable[[CreditAccountTable, CreditAccountRepository, LedgerEntryRepository, datetime], Awaitable[T]]


def utcnow() -> datetime:
    return datetime.now(UTC)


class BillingOrchestrator:
    """Executes ledger and payment-state operations on credit accounts.

    Parameters
    ----------
    session_factory:
        Factory producing ``AsyncSession`` instances; each operation opens
        and closes its own session.
    policy:
        Explicit billing parameters.  Defaults to :class:`BillingPolicy`.
    clock:
        Zero-argument callable returning the current UTC time.  Injected so
        tests can simulate the passage of time.
    locks:
        Per-account lock registry.  Share one registry between every
        orchestrator that writes to the same database from this process.
    retry_config:
        Conflict retry parameters; the default re-runs an operation once.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: BillingPolicy | None = None,
        *,
        clock: Clock | None = None,
        locks: AccountLockRegistry | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy or BillingPolicy()
        self._clock = clock or utcnow
        self._locks = locks or AccountLockRegistry()
        self._retry = retry_config or RetryConfig()

    @property
    def policy(self) -> BillingPolicy:
        return self._policy

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        account_id: str,
        operation: str,
        fn: _Mutation[T],
        *,
        check_integrity: bool = True,
    ) -> T:
        """Run *fn* inside a locked transaction, retrying once on a lost update."""

        async def attempt() -> T:
            async with self._locks.hold(account_id):
                violation: tuple[Decimal, Decimal] | None = None
                try:
                    async with self._session_factory() as session, session.begin():
                        accounts = CreditAccountRepository(session)
                        ledger = LedgerEntryRepository(session)
                        row = await accounts.get(account_id, for_update=True)
                        if row is None:
                            raise AccountNotFoundError(account_id)
                        if check_integrity:
                            if row.integrity_hold_at is not None:
                                raise IntegrityHoldError(account_id, row.current_balance)
                            violation = await self._check_latest_entry(row, ledger)
                        if violation is None:
                            return await fn(row, accounts, ledger, self._clock())
                except StaleDataError as exc:
                    logger.warning("Lost update on %s during %s", account_id, operation)
                    raise ConcurrencyConflictError(account_id) from exc
                except IntegrityError as exc:
                    # Another writer took the next ledger sequence first.
                    logger.warning("Ledger append collided on %s during %s: %s", account_id, operation, exc.orig)
                    raise ConcurrencyConflictError(account_id) from exc

                expected, actual = violation
                await self._place_integrity_hold(account_id, operation)
                raise LedgerInvariantError(account_id, expected, actual)

        return await async_retry_with_backoff(attempt, self._retry, (ConcurrencyConflictError,))

    @staticmethod
    async def _check_latest_entry(
        row: CreditAccountTable, ledger: LedgerEntryRepository
    ) -> tuple[Decimal, Decimal] | None:
        latest = await ledger.latest(row.account_id)
        expected = latest.balance_after if latest is not None else row.initial_credit_amount
        if Decimal(expected) != Decimal(row.current_balance):
            return Decimal(expected), Decimal(row.current_balance)
        return None

    async def _place_integrity_hold(self, account_id: str, operation: str) -> None:
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            row = await CreditAccountRepository(session).get(account_id, for_update=True)
            if row is not None and row.integrity_hold_at is None:
                row.integrity_hold_at = now
                row.updated_at = now
        logger.critical(
            "Ledger invariant violated on credit account %s (during %s); account placed on integrity hold",
            account_id,
            operation,
            extra={"account_id": account_id},
        )

    async def _derive_status(
        self,
        account_id: str,
        balance: Decimal,
        ledger: LedgerEntryRepository,
        now: datetime,
    ) -> AccountStatus:
        since = now - timedelta(days=self._policy.spend_window_days)
        rows = await ledger.list_since(account_id, since, LedgerEntryType.DEDUCTION)
        return account_state.recompute_status(
            balance,
            [LedgerEntry.from_row(r) for r in rows],
            now,
            window_days=self._policy.spend_window_days,
            threshold_days=self._policy.low_balance_threshold_days,
        )

    async def _apply_balance_change(
        self,
        row: CreditAccountTable,
        accounts: CreditAccountRepository,
        ledger: LedgerEntryRepository,
        now: datetime,
        *,
        entry_type: LedgerEntryType,
        amount: Decimal,
        description: str | None,
        external_reference: str | None = None,
        campaign_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAccount:
        new_balance = to_money(Decimal(row.current_balance) + amount)
        await ledger.append(
            row.account_id,
            entry_type,
            amount,
            new_balance,
            description=description,
            external_reference=external_reference,
            campaign_id=campaign_id,
            metadata=metadata,
            created_at=now,
        )
        row.current_balance = new_balance
        row.status = (await self._derive_status(row.account_id, new_balance, ledger, now)).value
        row.updated_at = now
        await accounts.save(row)
        return CreditAccount.model_validate(row)

    @staticmethod
    def _positive(amount: Decimal | int | float | str, what: str) -> Decimal:
        value = to_money(amount)
        if value <= 0:
            raise InvalidAmountError(f"{what} must be positive, got {value}")
        return value

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    async def open_account(
        self,
        customer_id: str,
        daily_budget: Decimal | int | float | str,
        days: int | None = None,
        *,
        stripe_customer_id: str | None = None,
        stripe_payment_method_id: str | None = None,
        account_id: str | None = None,
        opening_charge_reference: str | None = None,
    ) -> CreditAccount:
        """Create the customer's one and only credit account.

        The opening balance is ``daily_budget * days`` and is recorded as
        ``initial_credit_amount``, not as a ledger entry.  Callers that have
        already captured the opening charge pass the id they charged under
        as *account_id* and the processor reference as
        *opening_charge_reference*.

        Raises
        ------
        AccountAlreadyExistsError
            If *customer_id* already owns an account.
        PaymentProfileInUseError
            If *stripe_customer_id* is bound to another account.
        InvalidAmountError
            If *daily_budget* is not positive or *days* is below 1.
        """
        budget = self._positive(daily_budget, "Daily budget")
        days = days if days is not None else self._policy.prepaid_days
        if days < 1:
            raise InvalidAmountError(f"days must be >= 1, got {days}")
        initial = risk_policy.calculate_initial_credit(budget, days)
        now = self._clock()

        try:
            async with self._session_factory() as session, session.begin():
                accounts = CreditAccountRepository(session)
                if await accounts.get_by_customer(customer_id) is not None:
                    raise AccountAlreadyExistsError(customer_id)
                if stripe_customer_id and await accounts.get_by_stripe_customer(stripe_customer_id) is not None:
                    raise PaymentProfileInUseError(stripe_customer_id)
                row = await accounts.create(
                    customer_id=customer_id,
                    initial_credit_amount=initial,
                    status=account_state.derive_status(initial, None).value,
                    now=now,
                    stripe_customer_id=stripe_customer_id,
                    stripe_payment_method_id=stripe_payment_method_id,
                    account_id=account_id,
                    opening_charge_reference=opening_charge_reference,
                )
                account = CreditAccount.model_validate(row)
        except IntegrityError as exc:
            raise AccountAlreadyExistsError(customer_id) from exc

        logger.info(
            "Opened credit account %s for customer %s with %s (%s x %d days)",
            account.account_id,
            customer_id,
            initial,
            budget,
            days,
        )
        return account

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    async def deduct(
        self,
        account_id: str,
        amount: Decimal | int | float | str,
        description: str,
        campaign_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Deduct spend from the balance.

        Returns ``False`` without any mutation or ledger entry when *amount*
        exceeds the current balance.
        """
        value = self._positive(amount, "Deduction amount")

        async def op(row, accounts, ledger, now) -> bool:
            if value > row.current_balance:
                logger.info(
                    "Insufficient funds on %s: requested %s, balance %s",
                    account_id,
                    value,
                    row.current_balance,
                )
                return False
            await self._apply_balance_change(
                row,
                accounts,
                ledger,
                now,
                entry_type=LedgerEntryType.DEDUCTION,
                amount=-value,
                description=description,
                campaign_id=campaign_id,
                metadata=metadata,
            )
            return True

        return await self._mutate(account_id, "deduct", op)

    async def add_credit(
        self,
        account_id: str,
        amount: Decimal | int | float | str,
        description: str,
        external_reference: str | None = None,
        entry_type: LedgerEntryType = LedgerEntryType.CREDIT,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAccount:
        """Increase the balance by a non-negative *amount*.

        With an *external_reference* the credit is recorded at most once: a
        second call for the same processor charge returns the account
        unchanged.  Such credits also stamp ``last_successful_charge_at``.
        """
        if entry_type not in (LedgerEntryType.CREDIT, LedgerEntryType.REFUND):
            raise InvalidAmountError(f"add_credit cannot record {entry_type.value} entries")
        value = to_money(amount)
        if value < 0:
            raise InvalidAmountError(f"Credit amount must not be negative, got {value}")

        async def op(row, accounts, ledger, now) -> CreditAccount:
            if external_reference and await ledger.exists_for_reference(account_id, external_reference):
                logger.info("Charge %s already credited to %s; skipping", external_reference, account_id)
                return CreditAccount.model_validate(row)
            if external_reference:
                row.last_successful_charge_at = now
            return await self._apply_balance_change(
                row,
                accounts,
                ledger,
                now,
                entry_type=entry_type,
                amount=value,
                description=description,
                external_reference=external_reference,
                metadata=metadata,
            )

        return await self._mutate(account_id, "add_credit", op)

    async def adjust(
        self,
        account_id: str,
        amount: Decimal | int | float | str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAccount:
        """Record a signed administrative correction.  Never drives the balance below zero."""
        value = to_money(amount)
        if value == 0:
            raise InvalidAmountError("Adjustment amount must be non-zero")

        async def op(row, accounts, ledger, now) -> CreditAccount:
            if row.current_balance + value < 0:
                raise InvalidAmountError(
                    f"Adjustment of {value} would take {account_id} below zero (balance {row.current_balance})"
                )
            return await self._apply_balance_change(
                row,
                accounts,
                ledger,
                now,
                entry_type=LedgerEntryType.ADJUSTMENT,
                amount=value,
                description=description,
                metadata=metadata,
            )

        return await self._mutate(account_id, "adjust", op)

    # ------------------------------------------------------------------
    # Payment-state transitions
    # ------------------------------------------------------------------

    async def enter_grace_period(self, account_id: str, hours: int | None = None) -> CreditAccount:
        """Start a grace period after a failed automatic charge."""
        hours = hours if hours is not None else self._policy.grace_period_hours

        async def op(row, accounts, ledger, now) -> CreditAccount:
            row.payment_status = PaymentStatus.GRACE_PERIOD.value
            row.grace_period_ends_at = now + timedelta(hours=hours)
            row.failed_charge_count += 1
            row.updated_at = now
            await accounts.save(row)
            logger.warning(
                "Account %s entered grace period until %s (failed charges: %d)",
                account_id,
                row.grace_period_ends_at.isoformat(),
                row.failed_charge_count,
            )
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "enter_grace_period", op)

    async def mark_payment_failed(self, account_id: str) -> CreditAccount:
        async def op(row, accounts, ledger, now) -> CreditAccount:
            row.payment_status = PaymentStatus.FAILED.value
            row.failed_charge_count += 1
            row.updated_at = now
            await accounts.save(row)
            logger.warning("Account %s payment marked FAILED (failed charges: %d)", account_id, row.failed_charge_count)
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "mark_payment_failed", op)

    async def expire_grace_period(self, account_id: str) -> CreditAccount | None:
        """Mark FAILED only if the account is still in an elapsed grace period.

        Returns ``None`` when a payment landed (or the window was extended)
        between the sweep's listing and this call.
        """

        async def op(row, accounts, ledger, now) -> CreditAccount | None:
            if (
                row.payment_status != PaymentStatus.GRACE_PERIOD.value
                or row.grace_period_ends_at is None
                or row.grace_period_ends_at > now
            ):
                return None
            row.payment_status = PaymentStatus.FAILED.value
            row.failed_charge_count += 1
            row.updated_at = now
            await accounts.save(row)
            logger.warning("Grace period expired for account %s; payment marked FAILED", account_id)
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "expire_grace_period", op)

    async def pause_campaigns(self, account_id: str) -> CreditAccount:
        async def op(row, accounts, ledger, now) -> CreditAccount:
            row.payment_status = PaymentStatus.PAUSED.value
            row.campaigns_paused_at = now
            row.updated_at = now
            await accounts.save(row)
            logger.warning("Campaigns paused for account %s", account_id)
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "pause_campaigns", op)

    async def restore_account(self, account_id: str) -> CreditAccount:
        """Return the account to full payment standing.  Idempotent."""

        async def op(row, accounts, ledger, now) -> CreditAccount:
            already_restored = (
                row.payment_status == PaymentStatus.CURRENT.value
                and row.failed_charge_count == 0
                and row.grace_period_ends_at is None
                and row.campaigns_paused_at is None
            )
            if already_restored:
                return CreditAccount.model_validate(row)
            row.payment_status = PaymentStatus.CURRENT.value
            row.failed_charge_count = 0
            row.grace_period_ends_at = None
            row.campaigns_paused_at = None
            row.last_successful_charge_at = now
            row.updated_at = now
            await accounts.save(row)
            logger.info("Account %s restored to good standing", account_id)
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "restore_account", op)

    # ------------------------------------------------------------------
    # Administrative hold
    # ------------------------------------------------------------------

    async def suspend(self, account_id: str, reason: str) -> CreditAccount:
        """Place the administrative hold.  Recomputing status never clears it."""

        async def op(row, accounts, ledger, now) -> CreditAccount:
            row.suspended_at = row.suspended_at or now
            row.suspension_reason = reason
            row.updated_at = now
            await accounts.save(row)
            logger.warning("Account %s suspended: %s", account_id, reason)
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "suspend", op, check_integrity=False)

    async def lift_suspension(self, account_id: str) -> CreditAccount:
        async def op(row, accounts, ledger, now) -> CreditAccount:
            if row.suspended_at is None:
                return CreditAccount.model_validate(row)
            row.suspended_at = None
            row.suspension_reason = None
            row.updated_at = now
            await accounts.save(row)
            logger.info("Suspension lifted on account %s", account_id)
            return CreditAccount.model_validate(row)

        return await self._mutate(account_id, "lift_suspension", op, check_integrity=False)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    async def reconcile(self, account_id: str) -> ReconciliationReport:
        """Replay the full ledger and compare it with the stored balance.

        A clean replay also clears an existing integrity hold.

        Raises
        ------
        LedgerInvariantError
            When the replayed balance, or any entry's ``balance_after``
            snapshot, disagrees with the account.  The account is placed on
            an integrity hold first.
        """

        async def op(row, accounts, ledger, now) -> ReconciliationReport | tuple[Decimal, Decimal]:
            replay = await ledger.replay(account_id, Decimal(row.initial_credit_amount))
            balance = Decimal(row.current_balance)
            if replay.balance != balance or replay.first_broken_sequence is not None:
                return replay.balance, balance
            hold_cleared = row.integrity_hold_at is not None
            if hold_cleared:
                row.integrity_hold_at = None
                row.updated_at = now
                await accounts.save(row)
                logger.warning("Integrity hold cleared on %s after clean reconciliation", account_id)
            return ReconciliationReport(
                account_id=account_id,
                ledger_balance=replay.balance,
                account_balance=balance,
                entry_count=replay.entry_count,
                hold_cleared=hold_cleared,
            )

        outcome = await self._mutate(account_id, "reconcile", op, check_integrity=False)
        if isinstance(outcome, ReconciliationReport):
            return outcome
        expected, actual = outcome
        async with self._locks.hold(account_id):
            await self._place_integrity_hold(account_id, "reconcile")
        raise LedgerInvariantError(account_id, expected, actual)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> CreditAccount:
        async with self._session_factory() as session:
            row = await CreditAccountRepository(session).get(account_id)
            if row is None:
                raise AccountNotFoundError(account_id)
            return CreditAccount.model_validate(row)

    async def get_account_by_customer(self, customer_id: str) -> CreditAccount:
        async with self._session_factory() as session:
            row = await CreditAccountRepository(session).get_by_customer(customer_id)
            if row is None:
                raise AccountNotFoundError(customer_id)
            return CreditAccount.model_validate(row)

    async def find_by_stripe_customer(self, stripe_customer_id: str) -> CreditAccount | None:
        async with self._session_factory() as session:
            row = await CreditAccountRepository(session).get_by_stripe_customer(stripe_customer_id)
            return CreditAccount.model_validate(row) if row is not None else None

    async def is_charge_recorded(self, account_id: str, external_reference: str) -> bool:
        """Whether *external_reference* already funded this account's balance."""
        async with self._session_factory() as session:
            row = await CreditAccountRepository(session).get(account_id)
            if row is not None and row.opening_charge_reference == external_reference:
                return True
            return await LedgerEntryRepository(session).exists_for_reference(account_id, external_reference)

    async def average_daily_spend(self, account_id: str) -> Decimal:
        now = self._clock()
        since = now - timedelta(days=self._policy.spend_window_days)
        async with self._session_factory() as session:
            total = await LedgerEntryRepository(session).sum_deductions_since(account_id, since)
        return total / Decimal(self._policy.spend_window_days)

    async def snapshot(self, account_id: str) -> AccountSnapshot:
        """Account plus the derived figures collaborators use for spend decisions."""
        account = await self.get_account(account_id)
        now = self._clock()
        average = await self.average_daily_spend(account_id)
        return AccountSnapshot(
            account=account,
            average_daily_spend=to_money(average),
            days_remaining=account_state.days_remaining(account.current_balance, average),
            budget_multiplier=risk_policy.budget_multiplier(account, now),
            can_run_campaigns=risk_policy.can_run_campaigns(account),
            is_in_grace_period=risk_policy.is_in_grace_period(account, now),
        )

    async def list_transactions(
        self,
        account_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        """Ledger history newest first, with the total entry count."""
        async with self._session_factory() as session:
            rows, total = await LedgerEntryRepository(session).list_for_account(account_id, limit, offset)
            return [LedgerEntry.from_row(r) for r in rows], total

    async def list_billable_accounts(self) -> list[CreditAccount]:
        async with self._session_factory() as session:
            rows = await CreditAccountRepository(session).list_billable()
            return [CreditAccount.model_validate(r) for r in rows]

    async def list_expired_grace_periods(self, now: datetime | None = None) -> list[CreditAccount]:
        async with self._session_factory() as session:
            rows = await CreditAccountRepository(session).list_expired_grace(now or self._clock())
            return [CreditAccount.model_validate(r) for r in rows]
