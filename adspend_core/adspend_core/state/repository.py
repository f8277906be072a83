"""Repository classes providing access to the ledger state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated and storage errors surface inside
the caller's transaction; the caller is responsible for committing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adspend_core.models.account import LedgerEntryType, PaymentStatus
from adspend_core.state.tables import CreditAccountTable, LedgerEntryTable

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 100


def new_account_id() -> str:
    return f"acct-{uuid.uuid4().hex[:16]}"


def new_entry_id() -> str:
    return f"le-{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# CreditAccountRepository
# ---------------------------------------------------------------------------


class CreditAccountRepository:
    """CRUD operations for the ``credit_accounts`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        customer_id: str,
        initial_credit_amount: Decimal,
        status: str,
        now: datetime,
        stripe_customer_id: str | None = None,
        stripe_payment_method_id: str | None = None,
        account_id: str | None = None,
        opening_charge_reference: str | None = None,
    ) -> CreditAccountTable:
        """Insert a new account.

        Raises ``IntegrityError`` if the customer, or the Stripe customer,
        already has one.
        """
        row = CreditAccountTable(
            account_id=account_id or new_account_id(),
            customer_id=customer_id,
            initial_credit_amount=initial_credit_amount,
            current_balance=initial_credit_amount,
            currency="USD",
            status=status,
            payment_status=PaymentStatus.CURRENT.value,
            failed_charge_count=0,
            last_successful_charge_at=now,
            stripe_customer_id=stripe_customer_id,
            stripe_payment_method_id=stripe_payment_method_id,
            opening_charge_reference=opening_charge_reference,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, account_id: str, *, for_update: bool = False) -> CreditAccountTable | None:
        """Fetch an account by id, optionally taking a row lock (PostgreSQL)."""
        stmt = select(CreditAccountTable).where(CreditAccountTable.account_id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_customer(self, customer_id: str) -> CreditAccountTable | None:
        stmt = select(CreditAccountTable).where(CreditAccountTable.customer_id == customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, stripe_customer_id: str) -> CreditAccountTable | None:
        stmt = select(CreditAccountTable).where(CreditAccountTable.stripe_customer_id == stripe_customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_billable(self) -> list[CreditAccountTable]:
        """Accounts eligible for the daily run: no administrative or integrity hold."""
        stmt = (
            select(CreditAccountTable)
            .where(
                CreditAccountTable.suspended_at.is_(None),
                CreditAccountTable.integrity_hold_at.is_(None),
            )
            .order_by(CreditAccountTable.account_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_expired_grace(self, now: datetime) -> list[CreditAccountTable]:
        """Accounts still in GRACE_PERIOD whose window ended at or before *now*."""
        stmt = (
            select(CreditAccountTable)
            .where(
                CreditAccountTable.payment_status == PaymentStatus.GRACE_PERIOD.value,
                CreditAccountTable.grace_period_ends_at.is_not(None),
                CreditAccountTable.grace_period_ends_at <= now,
            )
            .order_by(CreditAccountTable.account_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def save(self, row: CreditAccountTable) -> None:
        """Flush pending changes on *row*; a stale ``version`` raises ``StaleDataError``."""
        self._session.add(row)
        await self._session.flush()


# ---------------------------------------------------------------------------
# LedgerEntryRepository
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of replaying an account's ledger from its opening balance."""

    balance: Decimal
    entry_count: int
    first_broken_sequence: int | None


class LedgerEntryRepository:
    """Append-only access to the ``ledger_entries`` table.

    The store never validates funds; the orchestrator does that before
    calling :meth:`append`.  There are no update or delete operations.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _next_sequence(self, account_id: str) -> int:
        stmt = select(func.coalesce(func.max(LedgerEntryTable.sequence), 0)).where(
            LedgerEntryTable.account_id == account_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) + 1

    async def append(
        self,
        account_id: str,
        entry_type: LedgerEntryType,
        amount: Decimal,
        balance_after: Decimal,
        description: str | None = None,
        external_reference: str | None = None,
        campaign_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> LedgerEntryTable:
        """Persist one entry and return it.  Touches no other account."""
        row = LedgerEntryTable(
            entry_id=new_entry_id(),
            account_id=account_id,
            sequence=await self._next_sequence(account_id),
            entry_type=entry_type.value,
            amount=amount,
            balance_after=balance_after,
            description=description,
            external_reference=external_reference,
            campaign_id=campaign_id,
            metadata_json=metadata or None,
        )
        if created_at is not None:
            row.created_at = created_at
        self._session.add(row)
        await self._session.flush()
        return row

    async def latest(self, account_id: str) -> LedgerEntryTable | None:
        """The most recent entry for *account_id*, or ``None`` for an empty ledger."""
        stmt = (
            select(LedgerEntryTable)
            .where(LedgerEntryTable.account_id == account_id)
            .order_by(LedgerEntryTable.sequence.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_account(
        self,
        account_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[LedgerEntryTable], int]:
        """List entries newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        count_r = await self._session.execute(
            select(func.count()).select_from(LedgerEntryTable).where(LedgerEntryTable.account_id == account_id)
        )
        total = count_r.scalar_one()

        stmt = (
            select(LedgerEntryTable)
            .where(LedgerEntryTable.account_id == account_id)
            .order_by(LedgerEntryTable.sequence.desc())
            .limit(limit)
            .offset(max(offset, 0))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_since(
        self,
        account_id: str,
        since: datetime,
        entry_type: LedgerEntryType | None = None,
    ) -> list[LedgerEntryTable]:
        """Entries created at or after *since*, oldest first."""
        stmt = select(LedgerEntryTable).where(
            LedgerEntryTable.account_id == account_id,
            LedgerEntryTable.created_at >= since,
        )
        if entry_type is not None:
            stmt = stmt.where(LedgerEntryTable.entry_type == entry_type.value)
        stmt = stmt.order_by(LedgerEntryTable.sequence)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def sum_deductions_since(self, account_id: str, since: datetime) -> Decimal:
        """Total absolute DEDUCTION amount recorded at or after *since*."""
        stmt = select(func.coalesce(func.sum(LedgerEntryTable.amount), 0)).where(
            LedgerEntryTable.account_id == account_id,
            LedgerEntryTable.entry_type == LedgerEntryType.DEDUCTION.value,
            LedgerEntryTable.created_at >= since,
        )
        result = await self._session.execute(stmt)
        return abs(Decimal(str(result.scalar_one())))

    async def exists_for_reference(self, account_id: str, external_reference: str) -> bool:
        """Whether an entry already records the processor charge *external_reference*."""
        stmt = select(func.count()).where(
            LedgerEntryTable.account_id == account_id,
            LedgerEntryTable.external_reference == external_reference,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def replay(self, account_id: str, opening_balance: Decimal) -> ReplayResult:
        """Re-apply every entry in sequence order starting at *opening_balance*.

        Also checks each entry's ``balance_after`` snapshot against the
        running total and reports the first sequence number where they
        disagree.
        """
        stmt = (
            select(LedgerEntryTable.sequence, LedgerEntryTable.amount, LedgerEntryTable.balance_after)
            .where(LedgerEntryTable.account_id == account_id)
            .order_by(LedgerEntryTable.sequence)
        )
        result = await self._session.execute(stmt)

        running = Decimal(opening_balance)
        count = 0
        broken: int | None = None
        for sequence, amount, balance_after in result.all():
            running += Decimal(amount)
            count += 1
            if broken is None and Decimal(balance_after) != running:
                broken = sequence
        return ReplayResult(balance=running, entry_count=count, first_broken_sequence=broken)

    async def replay_balance(self, account_id: str, opening_balance: Decimal) -> Decimal:
        """Balance obtained by replaying the ledger; see :meth:`replay`."""
        return (await self.replay(account_id, opening_balance)).balance
