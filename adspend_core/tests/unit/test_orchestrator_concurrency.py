"""Concurrent access tests for BillingOrchestrator.

These use a file-backed SQLite database so that every operation gets its own
connection, the way concurrent requests would in production.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from adspend_core.billing.locks import AccountLockRegistry
from adspend_core.billing.orchestrator import BillingOrchestrator
from adspend_core.billing.retry import RetryConfig
from adspend_core.state.database import create_tables, get_session_factory
from adspend_core.state.sqlite_adapter import get_local_engine


@pytest_asyncio.fixture
async def file_orchestrator(tmp_path, clock):
    engine = get_local_engine(tmp_path / "ledger.db")
    await create_tables(engine)
    yield BillingOrchestrator(
        get_session_factory(engine),
        clock=clock,
        retry_config=RetryConfig(base_delay=0.001, jitter=False),
    )
    await engine.dispose()


class TestConcurrentDeduct:
    """Two writers racing on one account must serialize."""

    @pytest.mark.asyncio
    async def test_only_one_of_two_deductions_succeeds(self, file_orchestrator) -> None:
        account = await file_orchestrator.open_account("cust-1", Decimal("20"), days=5)
        aid = account.account_id

        results = await asyncio.gather(
            file_orchestrator.deduct(aid, Decimal("60"), "Spend A"),
            file_orchestrator.deduct(aid, Decimal("60"), "Spend B"),
        )

        assert sorted(results) == [False, True]
        final = await file_orchestrator.get_account(aid)
        assert final.current_balance == Decimal("40.00")
        _, total = await file_orchestrator.list_transactions(aid)
        assert total == 1
        report = await file_orchestrator.reconcile(aid)
        assert report.ledger_balance == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_many_small_deductions_never_overdraw(self, file_orchestrator) -> None:
        account = await file_orchestrator.open_account("cust-1", Decimal("10"), days=10)
        aid = account.account_id

        results = await asyncio.gather(*(file_orchestrator.deduct(aid, Decimal("7"), f"Spend {i}") for i in range(20)))

        assert results.count(True) == 14
        final = await file_orchestrator.get_account(aid)
        assert final.current_balance == Decimal("2.00")
        entries, total = await file_orchestrator.list_transactions(aid, limit=100)
        assert total == 14
        assert [e.sequence for e in entries] == list(range(14, 0, -1))
        assert (await file_orchestrator.reconcile(aid)).ledger_balance == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_credit_and_deduct_interleave(self, file_orchestrator) -> None:
        account = await file_orchestrator.open_account("cust-1", Decimal("10"), days=5)
        aid = account.account_id

        await asyncio.gather(
            file_orchestrator.add_credit(aid, Decimal("100"), "Top-up"),
            file_orchestrator.deduct(aid, Decimal("30"), "Spend"),
            file_orchestrator.add_credit(aid, Decimal("5"), "Refund"),
        )

        final = await file_orchestrator.get_account(aid)
        assert final.current_balance == Decimal("125.00")
        assert (await file_orchestrator.reconcile(aid)).ledger_balance == final.current_balance

    @pytest.mark.asyncio
    async def test_different_accounts_do_not_block(self, file_orchestrator) -> None:
        first = await file_orchestrator.open_account("cust-1", Decimal("10"), days=5)
        second = await file_orchestrator.open_account("cust-2", Decimal("10"), days=5)

        ok = await asyncio.gather(
            file_orchestrator.deduct(first.account_id, Decimal("50"), "Spend"),
            file_orchestrator.deduct(second.account_id, Decimal("50"), "Spend"),
        )
        assert ok == [True, True]


class TestAccountLockRegistry:
    @pytest.mark.asyncio
    async def test_hold_serializes_same_account(self) -> None:
        registry = AccountLockRegistry()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with registry.hold("acct-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_is_locked_reports_holder(self) -> None:
        registry = AccountLockRegistry()
        assert registry.is_locked("acct-1") is False
        async with registry.hold("acct-1"):
            assert registry.is_locked("acct-1") is True
            assert registry.is_locked("acct-2") is False
        assert registry.is_locked("acct-1") is False
