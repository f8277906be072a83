"""Tests for the payment recovery flows.

Covers:
- retry_payment success and failure (no mutation on failure)
- top_up bounds, failure without grace, restore on success
- scheduled replenishment escalation ladder
- processor timeout fails closed
- opening credit is captured before the account exists
- Stripe webhook handling: credit once, failures acknowledged only
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from adspend_core.billing.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InvalidAmountError,
    PaymentProfileInUseError,
)
from adspend_core.models.account import LedgerEntryType, PaymentStatus

from adspend_api.services.payment_processor import ChargeResult


def _decline(account, amount, description, metadata=None) -> ChargeResult:
    return ChargeResult.failed(amount, "Your card was declined.")


# ---------------------------------------------------------------------------
# retry_payment
# ---------------------------------------------------------------------------


class TestRetryPayment:
    @pytest.mark.asyncio
    async def test_success_credits_and_restores(self, orchestrator, recovery, processor) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        await orchestrator.enter_grace_period(account.account_id)

        result = await recovery.retry_payment(account.account_id)

        assert result.success is True
        # No spend yet, so the replenishment is the minimum top-up.
        assert result.amount == Decimal("50.00")
        assert result.account.current_balance == Decimal("400.00")
        assert result.account.payment_status == PaymentStatus.CURRENT
        assert result.account.failed_charge_count == 0

        entries, total = await orchestrator.list_transactions(account.account_id)
        assert total == 1
        assert entries[0].entry_type == LedgerEntryType.CREDIT
        assert entries[0].external_reference == result.charge.charge_id
        processor.charge.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_amount_scales_with_recent_spend(self, orchestrator, recovery, processor) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("100"))
        for _ in range(7):
            assert await orchestrator.deduct(account.account_id, Decimal("20"), "spend")

        result = await recovery.retry_payment(account.account_id)

        # Average 20/day over the 7-day window -> 140, above the 50 minimum.
        assert result.amount == Decimal("140.00")
        charged_amount = processor.charge.await_args.args[1]
        assert charged_amount == Decimal("140.00")

    @pytest.mark.asyncio
    async def test_failure_leaves_account_untouched(self, orchestrator, recovery, processor) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        await orchestrator.mark_payment_failed(account.account_id)
        processor.charge.side_effect = _decline

        result = await recovery.retry_payment(account.account_id)

        assert result.success is False
        assert result.suggested_top_up == Decimal("50.00")
        assert "declined" in result.message
        after = await orchestrator.get_account(account.account_id)
        assert after.current_balance == Decimal("350.00")
        assert after.payment_status == PaymentStatus.FAILED
        assert after.failed_charge_count == 1
        _, total = await orchestrator.list_transactions(account.account_id)
        assert total == 0


# ---------------------------------------------------------------------------
# top_up
# ---------------------------------------------------------------------------


class TestTopUp:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("49.99"), Decimal("10000.01"), Decimal("0")])
    async def test_out_of_bounds_rejected_before_charging(self, orchestrator, recovery, processor, amount) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))

        with pytest.raises(InvalidAmountError):
            await recovery.top_up(account.account_id, amount)
        processor.charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bounds_are_inclusive(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))

        low = await recovery.top_up(account.account_id, Decimal("50"))
        high = await recovery.top_up(account.account_id, Decimal("10000"))

        assert low.success and high.success
        assert high.account.current_balance == Decimal("10400.00")

    @pytest.mark.asyncio
    async def test_failure_never_enters_grace(self, orchestrator, recovery, processor) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        processor.charge.side_effect = _decline

        result = await recovery.top_up(account.account_id, Decimal("200"))

        assert result.success is False
        assert result.escalated_to is None
        after = await orchestrator.get_account(account.account_id)
        assert after.payment_status == PaymentStatus.CURRENT
        assert after.failed_charge_count == 0
        assert after.grace_period_ends_at is None

    @pytest.mark.asyncio
    async def test_success_restores_failed_account(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        await orchestrator.mark_payment_failed(account.account_id)

        result = await recovery.top_up(account.account_id, Decimal("500"))

        assert result.account.payment_status == PaymentStatus.CURRENT
        assert result.account.current_balance == Decimal("850.00")


# ---------------------------------------------------------------------------
# Scheduled replenishment and escalation
# ---------------------------------------------------------------------------


class TestScheduledReplenishment:
    @pytest.mark.asyncio
    async def test_escalation_ladder(self, orchestrator, recovery, processor) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        processor.charge.side_effect = _decline

        first = await recovery.replenish_scheduled(account.account_id, Decimal("100"))
        second = await recovery.replenish_scheduled(account.account_id, Decimal("100"))
        third = await recovery.replenish_scheduled(account.account_id, Decimal("100"))

        assert first.escalated_to == PaymentStatus.GRACE_PERIOD
        assert second.escalated_to == PaymentStatus.FAILED
        assert third.escalated_to == PaymentStatus.PAUSED
        assert third.account.campaigns_paused_at is not None
        assert third.account.current_balance == Decimal("350.00")

    @pytest.mark.asyncio
    async def test_success_credits_and_restores(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        await orchestrator.enter_grace_period(account.account_id)

        result = await recovery.replenish_scheduled(account.account_id, Decimal("120"))

        assert result.success is True
        assert result.account.current_balance == Decimal("470.00")
        assert result.account.payment_status == PaymentStatus.CURRENT

    @pytest.mark.asyncio
    async def test_auto_replenish_failure_does_not_escalate(self, orchestrator, recovery, processor) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        processor.charge.side_effect = _decline

        result = await recovery.auto_replenish(account.account_id, Decimal("100"))

        assert result.success is False
        after = await orchestrator.get_account(account.account_id)
        assert after.payment_status == PaymentStatus.CURRENT
        assert after.failed_charge_count == 0


class TestProcessorTimeout:
    @pytest.mark.asyncio
    async def test_timeout_is_a_failed_charge(self, orchestrator, processor) -> None:
        from adspend_api.services.recovery_service import RecoveryService

        async def _hang(account, amount, description, metadata=None):
            await asyncio.sleep(5)

        processor.charge.side_effect = _hang
        service = RecoveryService(orchestrator, processor, timeout_seconds=0.05)
        account = await orchestrator.open_account("cust-1", Decimal("50"))

        result = await service.top_up(account.account_id, Decimal("100"))

        assert result.success is False
        assert "timed out" in (result.charge.error or "")
        after = await orchestrator.get_account(account.account_id)
        assert after.current_balance == Decimal("350.00")


# ---------------------------------------------------------------------------
# open_account
# ---------------------------------------------------------------------------


class TestOpenAccount:
    @pytest.mark.asyncio
    async def test_charges_then_opens(self, orchestrator, recovery, processor) -> None:
        result = await recovery.open_account("cust-1", Decimal("50"))

        assert result.success is True
        processor.resolve_payment_profile.assert_awaited_once_with("cust-1")
        processor.charge.assert_awaited_once()
        account = await orchestrator.get_account(result.account.account_id)
        assert account.current_balance == Decimal("350.00")
        assert account.opening_charge_reference == result.charge.charge_id
        assert account.stripe_customer_id == "cus_on_file"
        assert account.stripe_payment_method_id == "pm_on_file"

    @pytest.mark.asyncio
    async def test_declined_charge_opens_nothing(self, orchestrator, recovery, processor) -> None:
        processor.charge.side_effect = _decline

        result = await recovery.open_account("cust-1", Decimal("50"))

        assert result.success is False
        assert result.account is None
        with pytest.raises(AccountNotFoundError):
            await orchestrator.get_account_by_customer("cust-1")

    @pytest.mark.asyncio
    async def test_opening_credit_capped_at_maximum_top_up(self, recovery, processor) -> None:
        with pytest.raises(InvalidAmountError):
            await recovery.open_account("cust-1", Decimal("1000000"), 90)
        processor.resolve_payment_profile.assert_not_awaited()
        processor.charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_existing_account_is_not_charged(self, orchestrator, recovery, processor) -> None:
        await orchestrator.open_account("cust-1", Decimal("50"))

        with pytest.raises(AccountAlreadyExistsError):
            await recovery.open_account("cust-1", Decimal("50"))
        processor.charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_profile_bound_elsewhere_is_not_charged(self, orchestrator, recovery, processor) -> None:
        await orchestrator.open_account("cust-2", Decimal("50"), stripe_customer_id="cus_on_file")

        with pytest.raises(PaymentProfileInUseError):
            await recovery.open_account("cust-1", Decimal("50"))
        processor.charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_profile_lookup_fails_closed(self, orchestrator, recovery, processor) -> None:
        async def slow_lookup(customer_id):
            await asyncio.sleep(5)

        processor.resolve_payment_profile.side_effect = slow_lookup

        result = await recovery.open_account("cust-1", Decimal("50"))

        assert result.success is False
        processor.charge.assert_not_awaited()


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _intent_event(event_type: str, intent_id: str, account_id: str, cents: int = 15000) -> dict:
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "amount": cents,
                "amount_received": cents if event_type == "payment_intent.succeeded" else 0,
                "customer": "cus_test",
                "metadata": {
                    "adspend_account_id": account_id,
                    "type": "ad_spend_credit",
                    "charge_kind": "manual_top_up",
                },
                "last_payment_error": {"message": "Card declined"},
            }
        },
    }


class TestWebhookEvents:
    @pytest.mark.asyncio
    async def test_succeeded_credits_once(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        await orchestrator.mark_payment_failed(account.account_id)
        event = _intent_event("payment_intent.succeeded", "pi_abc", account.account_id)

        first = await recovery.handle_webhook_event(event)
        second = await recovery.handle_webhook_event(event)

        assert first == {"status": "credited"}
        assert second == {"status": "duplicate"}
        after = await orchestrator.get_account(account.account_id)
        assert after.current_balance == Decimal("500.00")
        assert after.payment_status == PaymentStatus.CURRENT

    @pytest.mark.asyncio
    async def test_succeeded_after_synchronous_credit_is_duplicate(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        result = await recovery.top_up(account.account_id, Decimal("150"))
        event = _intent_event("payment_intent.succeeded", result.charge.charge_id, account.account_id)

        outcome = await recovery.handle_webhook_event(event)

        assert outcome == {"status": "duplicate"}
        after = await orchestrator.get_account(account.account_id)
        assert after.current_balance == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_payment_failed_is_acknowledged_without_escalation(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        event = _intent_event("payment_intent.payment_failed", "pi_fail", account.account_id)

        outcome = await recovery.handle_webhook_event(event)

        assert outcome == {"status": "acknowledged"}
        after = await orchestrator.get_account(account.account_id)
        assert after.payment_status == PaymentStatus.CURRENT
        assert after.failed_charge_count == 0

    @pytest.mark.asyncio
    async def test_other_charges_on_the_stripe_customer_ignored(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"), stripe_customer_id="cus_test")
        event = _intent_event("payment_intent.succeeded", "pi_subscription_invoice", account.account_id, cents=2900)
        event["data"]["object"]["metadata"] = {}

        outcome = await recovery.handle_webhook_event(event)

        assert outcome == {"status": "ignored", "reason": "not_ad_spend"}
        after = await orchestrator.get_account(account.account_id)
        assert after.current_balance == Decimal("350.00")

    @pytest.mark.asyncio
    async def test_untagged_intent_with_account_id_ignored(self, orchestrator, recovery) -> None:
        account = await orchestrator.open_account("cust-1", Decimal("50"))
        event = _intent_event("payment_intent.succeeded", "pi_other", account.account_id)
        event["data"]["object"]["metadata"]["type"] = "subscription"

        outcome = await recovery.handle_webhook_event(event)

        assert outcome["reason"] == "not_ad_spend"
        assert (await orchestrator.get_account(account.account_id)).current_balance == Decimal("350.00")

    @pytest.mark.asyncio
    async def test_opening_charge_redelivery_is_duplicate(self, orchestrator, recovery) -> None:
        opened = await recovery.open_account("cust-1", Decimal("50"))
        event = _intent_event("payment_intent.succeeded", opened.charge.charge_id, opened.account.account_id, cents=35000)

        outcome = await recovery.handle_webhook_event(event)

        assert outcome == {"status": "duplicate"}
        after = await orchestrator.get_account(opened.account.account_id)
        assert after.current_balance == Decimal("350.00")

    @pytest.mark.asyncio
    async def test_unknown_account_and_event_type_ignored(self, recovery) -> None:
        unknown = _intent_event("payment_intent.succeeded", "pi_1", "acct-missing")
        other = {"type": "customer.created", "data": {"object": {}}}

        assert (await recovery.handle_webhook_event(unknown))["reason"] == "unknown_account"
        assert (await recovery.handle_webhook_event(other))["reason"] == "unhandled_event_type"
