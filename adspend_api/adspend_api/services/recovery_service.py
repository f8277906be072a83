"""Charge-then-credit flows: opening credit, retries, top-ups, replenishment.

Every flow charges the processor exactly once, outside any account lock, and
only mutates the account after a successful charge.  A failed or timed-out
charge is returned to the caller unchanged.  Only the scheduled replenishment
path escalates the account's payment status on failure:

=========================  ======================
Failed charges so far      Transition
=========================  ======================
0                          enter grace period
1                          payment FAILED
2 or more                  campaigns PAUSED
=========================  ======================
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any

from adspend_core.billing import risk_policy
from adspend_core.billing.account_state import to_money
from adspend_core.billing.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    BillingError,
    InvalidAmountError,
    PaymentProfileInUseError,
)
from adspend_core.billing.orchestrator import BillingOrchestrator
from adspend_core.models.account import CreditAccount, PaymentStatus
from adspend_core.state.repository import new_account_id
from pydantic import BaseModel, ConfigDict

from adspend_api.services.payment_processor import AD_SPEND_INTENT_TYPE, ChargeResult, PaymentProcessor

logger = logging.getLogger(__name__)

CHARGE_KIND_OPENING = "initial_credit"
CHARGE_KIND_RETRY = "payment_retry"
CHARGE_KIND_TOP_UP = "manual_top_up"
CHARGE_KIND_SCHEDULED = "scheduled_replenishment"
CHARGE_KIND_AUTO = "auto_replenishment"


class RecoveryResult(BaseModel):
    """What a recovery flow did, in terms the API can show a customer."""

    model_config = ConfigDict(frozen=True)

    success: bool
    amount: Decimal
    charge: ChargeResult
    account: CreditAccount | None = None
    message: str
    suggested_top_up: Decimal | None = None
    escalated_to: PaymentStatus | None = None


class RecoveryService:
    """Charge-then-credit flows on top of :class:`BillingOrchestrator`.

    Parameters
    ----------
    orchestrator:
        The transactional billing core.
    processor:
        Payment processor adapter.
    timeout_seconds:
        Upper bound on a single charge.  A timeout is treated as a failed
        charge; the account is left untouched.
    """

    def __init__(
        self,
        orchestrator: BillingOrchestrator,
        processor: PaymentProcessor,
        *,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._processor = processor
        self._timeout = timeout_seconds

    async def _charge(self, account: CreditAccount, amount: Decimal, description: str, kind: str) -> ChargeResult:
        try:
            return await asyncio.wait_for(
                self._processor.charge(account, amount, description, {"charge_kind": kind}),
                timeout=self._timeout,
            )
        except TimeoutError:
            logger.error(
                "Payment processor timed out after %.1fs charging %s to %s",
                self._timeout,
                amount,
                account.account_id,
            )
            return ChargeResult.failed(amount, "Payment processor timed out")

    async def _credit_charge(self, account: CreditAccount, charge: ChargeResult, description: str, kind: str) -> CreditAccount:
        assert charge.charge_id is not None  # noqa: S101
        return await self._orchestrator.add_credit(
            account.account_id,
            charge.amount,
            description,
            external_reference=charge.charge_id,
            metadata={"charge_kind": kind},
        )

    async def suggested_top_up(self, account_id: str) -> Decimal:
        """Replenishment size: the larger of the minimum top-up and a week of spend."""
        policy = self._orchestrator.policy
        average = await self._orchestrator.average_daily_spend(account_id)
        return risk_policy.replenishment_amount(average, policy.min_top_up, policy.prepaid_days)

    # ------------------------------------------------------------------
    # Customer-initiated flows
    # ------------------------------------------------------------------

    async def open_account(
        self,
        customer_id: str,
        daily_budget: Decimal | int | str,
        days: int | None = None,
    ) -> RecoveryResult:
        """Capture the prepaid opening credit, then create the account.

        The card charged is the one on file with the processor for
        *customer_id*.  No account is created unless the charge succeeds.

        Raises
        ------
        AccountAlreadyExistsError
            If *customer_id* already owns an account.  Nothing is charged.
        PaymentProfileInUseError
            If the customer's processor profile funds another account.
        InvalidAmountError
            If the opening credit is not positive or exceeds ``max_top_up``.
        """
        policy = self._orchestrator.policy
        budget = to_money(daily_budget)
        days = days if days is not None else policy.prepaid_days
        if budget <= 0 or days < 1:
            raise InvalidAmountError("Daily budget and days must be positive")
        initial = risk_policy.calculate_initial_credit(budget, days)
        if initial > policy.max_top_up:
            raise InvalidAmountError(f"Opening credit of {initial} exceeds the maximum of {policy.max_top_up}")

        try:
            await self._orchestrator.get_account_by_customer(customer_id)
        except AccountNotFoundError:
            pass
        else:
            raise AccountAlreadyExistsError(customer_id)

        pending = CreditAccount(
            account_id=new_account_id(),
            customer_id=customer_id,
            initial_credit_amount=initial,
            current_balance=Decimal("0.00"),
        )
        try:
            profile = await asyncio.wait_for(
                self._processor.resolve_payment_profile(customer_id), timeout=self._timeout
            )
        except TimeoutError:
            logger.error("Payment profile lookup timed out for customer %s", customer_id)
            profile = None
        if profile is None:
            charge = ChargeResult.failed(initial, "No payment method on file")
        else:
            if profile.stripe_customer_id:
                if await self._orchestrator.find_by_stripe_customer(profile.stripe_customer_id) is not None:
                    raise PaymentProfileInUseError(profile.stripe_customer_id)
            pending = pending.model_copy(
                update={
                    "stripe_customer_id": profile.stripe_customer_id,
                    "stripe_payment_method_id": profile.stripe_payment_method_id,
                }
            )
            charge = await self._charge(
                pending, initial, f"Initial ad spend credit ({days} days)", CHARGE_KIND_OPENING
            )

        if not charge.success:
            logger.warning("Opening charge of %s failed for customer %s: %s", initial, customer_id, charge.error)
            return RecoveryResult(
                success=False,
                amount=initial,
                charge=charge,
                message=f"Payment of {initial} failed: {charge.error}. Add a payment method and try again.",
            )

        try:
            account = await self._orchestrator.open_account(
                customer_id,
                budget,
                days,
                stripe_customer_id=pending.stripe_customer_id,
                stripe_payment_method_id=pending.stripe_payment_method_id,
                account_id=pending.account_id,
                opening_charge_reference=charge.charge_id,
            )
        except BillingError:
            logger.error(
                "Captured opening charge %s (%s) for customer %s but the account was not created; refund required",
                charge.charge_id,
                initial,
                customer_id,
            )
            raise
        return RecoveryResult(
            success=True,
            amount=initial,
            charge=charge,
            account=account,
            message=f"Prepaid {initial} of ad spend credit.",
        )

    async def retry_payment(self, account_id: str) -> RecoveryResult:
        """Charge the replenishment amount once; on success credit and restore."""
        account = await self._orchestrator.get_account(account_id)
        amount = await self.suggested_top_up(account_id)
        charge = await self._charge(account, amount, "Ad spend payment recovery", CHARGE_KIND_RETRY)

        if not charge.success:
            logger.warning("Payment retry failed for %s: %s", account_id, charge.error)
            return RecoveryResult(
                success=False,
                amount=amount,
                charge=charge,
                account=account,
                message=f"Payment of {amount} failed: {charge.error}. Update your payment method and try again.",
                suggested_top_up=amount,
            )

        await self._credit_charge(account, charge, "Payment recovery", CHARGE_KIND_RETRY)
        restored = await self._orchestrator.restore_account(account_id)
        logger.info("Payment recovered via retry for %s (%s)", account_id, amount)
        return RecoveryResult(
            success=True,
            amount=amount,
            charge=charge,
            account=restored,
            message="Payment successful! Your campaigns will resume shortly.",
        )

    async def top_up(self, account_id: str, amount: Decimal | int | str) -> RecoveryResult:
        """Manual top-up within the configured bounds.

        A failed charge never enters the grace period; a successful one
        also restores an account that was behind on payments.

        Raises
        ------
        InvalidAmountError
            If *amount* is outside ``[min_top_up, max_top_up]``.
        """
        policy = self._orchestrator.policy
        value = to_money(amount)
        if value < policy.min_top_up or value > policy.max_top_up:
            raise InvalidAmountError(f"Top-up amount must be between {policy.min_top_up} and {policy.max_top_up}")

        account = await self._orchestrator.get_account(account_id)
        charge = await self._charge(account, value, "Ad spend credit top-up", CHARGE_KIND_TOP_UP)
        if not charge.success:
            logger.warning("Manual top-up failed for %s: %s", account_id, charge.error)
            return RecoveryResult(
                success=False,
                amount=value,
                charge=charge,
                account=account,
                message=f"Payment of {value} failed: {charge.error}. Check your card details and try again.",
                suggested_top_up=value,
            )

        credited = await self._credit_charge(account, charge, "Manual credit top-up", CHARGE_KIND_TOP_UP)
        if credited.payment_status != PaymentStatus.CURRENT:
            credited = await self._orchestrator.restore_account(account_id)
        return RecoveryResult(
            success=True,
            amount=value,
            charge=charge,
            account=credited,
            message=f"Added {value} to your ad spend balance.",
        )

    # ------------------------------------------------------------------
    # Scheduled flows
    # ------------------------------------------------------------------

    async def replenish_scheduled(self, account_id: str, amount: Decimal, description: str = "Credit replenishment") -> RecoveryResult:
        """Charge on behalf of the daily run; escalate the account on failure."""
        account = await self._orchestrator.get_account(account_id)
        value = to_money(amount)
        charge = await self._charge(account, value, "Ad spend replenishment", CHARGE_KIND_SCHEDULED)

        if not charge.success:
            escalated = await self.escalate(account, charge.error or "unknown error")
            return RecoveryResult(
                success=False,
                amount=value,
                charge=charge,
                account=escalated,
                message=f"Automatic replenishment of {value} failed: {charge.error}",
                suggested_top_up=value,
                escalated_to=escalated.payment_status,
            )

        await self._credit_charge(account, charge, description, CHARGE_KIND_SCHEDULED)
        restored = await self._orchestrator.restore_account(account_id)
        return RecoveryResult(
            success=True,
            amount=value,
            charge=charge,
            account=restored,
            message=f"Replenished {value}",
        )

    async def auto_replenish(self, account_id: str, amount: Decimal) -> RecoveryResult:
        """Top up a low balance ahead of time.  Failure is only a warning."""
        account = await self._orchestrator.get_account(account_id)
        value = to_money(amount)
        charge = await self._charge(account, value, "Auto-replenishment", CHARGE_KIND_AUTO)
        if not charge.success:
            logger.warning(
                "Low balance on %s (%s); auto-replenishment of %s failed: %s",
                account_id,
                account.current_balance,
                value,
                charge.error,
            )
            return RecoveryResult(
                success=False,
                amount=value,
                charge=charge,
                account=account,
                message=f"Low balance: automatic top-up of {value} failed",
                suggested_top_up=value,
            )
        credited = await self._credit_charge(account, charge, "Auto-replenishment", CHARGE_KIND_AUTO)
        logger.info("Auto-replenished %s for %s", value, account_id)
        return RecoveryResult(success=True, amount=value, charge=charge, account=credited, message=f"Auto-replenished {value}")

    async def escalate(self, account: CreditAccount, reason: str) -> CreditAccount:
        """Move the account one step down the failed-payment ladder."""
        logger.warning(
            "Payment failed for %s (failed charges so far: %d): %s",
            account.account_id,
            account.failed_charge_count,
            reason,
        )
        if account.failed_charge_count == 0:
            return await self._orchestrator.enter_grace_period(account.account_id)
        if account.failed_charge_count == 1:
            return await self._orchestrator.mark_payment_failed(account.account_id)
        return await self._orchestrator.pause_campaigns(account.account_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook_event(self, event: dict[str, Any]) -> dict[str, str]:
        """Apply a verified Stripe event.

        Only intents this service created are considered: ``metadata.type``
        must be ``ad_spend_credit`` and ``metadata.adspend_account_id`` must
        name an existing account.  Other charges on the same Stripe customer
        (subscriptions, invoices) are ignored.

        ``payment_intent.succeeded`` credits the charge (once per intent id)
        and restores the account.  ``payment_intent.payment_failed`` is only
        acknowledged: the synchronous charge path already escalated, and
        escalating again here would double-count the failure.
        """
        event_type = event.get("type", "")
        data_object = event.get("data", {}).get("object", {}) or {}

        if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            logger.debug("Ignoring Stripe event type %s", event_type)
            return {"status": "ignored", "reason": "unhandled_event_type"}

        metadata = data_object.get("metadata") or {}
        if metadata.get("type") != AD_SPEND_INTENT_TYPE:
            logger.debug("Ignoring %s for non ad-spend intent %s", event_type, data_object.get("id"))
            return {"status": "ignored", "reason": "not_ad_spend"}

        account = await self._resolve_account(metadata)
        if account is None:
            logger.warning(
                "Stripe event %s for intent %s has no matching credit account",
                event_type,
                data_object.get("id"),
            )
            return {"status": "ignored", "reason": "unknown_account"}

        intent_id: str = data_object.get("id", "")
        if event_type == "payment_intent.payment_failed":
            error = (data_object.get("last_payment_error") or {}).get("message", "unknown error")
            logger.warning("Stripe reports failed payment %s for %s: %s", intent_id, account.account_id, error)
            return {"status": "acknowledged"}

        if not intent_id:
            return {"status": "ignored", "reason": "missing_intent_id"}
        if await self._orchestrator.is_charge_recorded(account.account_id, intent_id):
            return {"status": "duplicate"}

        cents = data_object.get("amount_received") or data_object.get("amount") or 0
        amount = to_money(Decimal(cents) / 100)
        kind = metadata.get("charge_kind", "webhook")
        await self._orchestrator.add_credit(
            account.account_id,
            amount,
            "Payment confirmed by processor",
            external_reference=intent_id,
            metadata={"charge_kind": kind, "source": "webhook"},
        )
        await self._orchestrator.restore_account(account.account_id)
        logger.info("Credited %s to %s from PaymentIntent %s", amount, account.account_id, intent_id)
        return {"status": "credited"}

    async def _resolve_account(self, metadata: dict[str, Any]) -> CreditAccount | None:
        account_id = metadata.get("adspend_account_id")
        if not account_id:
            return None
        try:
            return await self._orchestrator.get_account(account_id)
        except AccountNotFoundError:
            return None
