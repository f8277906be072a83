"""Payment processor adapters.

The billing core only needs "charge succeeded" or "charge failed".  Both
adapters return a :class:`ChargeResult` instead of raising for declined or
failed charges; the caller decides what a failure means for the account.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Any, Protocol

from adspend_core.models.account import CreditAccount
from pydantic import BaseModel, ConfigDict

from adspend_api.config import APISettings

logger = logging.getLogger(__name__)

# metadata.type on every PaymentIntent created here.
AD_SPEND_INTENT_TYPE = "ad_spend_credit"


class ChargeResult(BaseModel):
    """Outcome of a single charge attempt."""

    model_config = ConfigDict(frozen=True)

    success: bool
    amount: Decimal
    charge_id: str | None = None
    error: str | None = None

    @classmethod
    def succeeded(cls, amount: Decimal, charge_id: str) -> ChargeResult:
        return cls(success=True, amount=amount, charge_id=charge_id)

    @classmethod
    def failed(cls, amount: Decimal, error: str, charge_id: str | None = None) -> ChargeResult:
        return cls(success=False, amount=amount, error=error, charge_id=charge_id)


class PaymentProfile(BaseModel):
    """Processor references for the card a customer has on file."""

    model_config = ConfigDict(frozen=True)

    stripe_customer_id: str | None = None
    stripe_payment_method_id: str | None = None


class PaymentProcessor(Protocol):
    """Anything that can charge a customer's stored payment method."""

    async def resolve_payment_profile(self, customer_id: str) -> PaymentProfile | None: ...

    async def charge(
        self,
        account: CreditAccount,
        amount: Decimal,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult: ...


class ManualPaymentProcessor:
    """Approves every charge without contacting a processor.

    Used when billing is disabled (local development, demos); the ledger
    still records a ``manual:`` reference for each credit.
    """

    async def resolve_payment_profile(self, customer_id: str) -> PaymentProfile | None:
        return PaymentProfile()

    async def charge(
        self,
        account: CreditAccount,
        amount: Decimal,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        charge_id = f"manual:{uuid.uuid4().hex}"
        logger.info("Manual charge %s of %s approved for %s (%s)", charge_id, amount, account.account_id, description)
        return ChargeResult.succeeded(amount, charge_id)


class StripePaymentProcessor:
    """Off-session Stripe PaymentIntent charges against the saved card.

    The Stripe SDK is synchronous, so each call runs in a worker thread.
    The caller bounds the wait; a timed-out intent may still settle later
    and is then picked up by the ``payment_intent.succeeded`` webhook.

    Parameters
    ----------
    settings:
        API settings containing the Stripe secret key.
    """

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def resolve_payment_profile(self, customer_id: str) -> PaymentProfile | None:
        """Find the Stripe customer tagged with *customer_id* and its default card.

        The tag is ``metadata.adspend_customer_id``, written when the
        customer saves a card through the billing portal.  Returns ``None``
        when there is no such customer or no default payment method.
        """
        if not customer_id or any(ch in customer_id for ch in "'\\"):
            return None
        return await asyncio.to_thread(self._find_profile, customer_id)

    def _find_profile(self, customer_id: str) -> PaymentProfile | None:
        stripe = self._get_stripe()
        try:
            found = stripe.Customer.search(query=f"metadata['adspend_customer_id']:'{customer_id}'", limit=2)
        except stripe.StripeError as exc:
            logger.error("Stripe customer lookup failed for %s: %s", customer_id, exc, exc_info=True)
            return None

        customers = list(found.data)
        if len(customers) != 1:
            if customers:
                logger.warning("Customer %s is tagged on %d Stripe customers", customer_id, len(customers))
            return None
        customer = customers[0]
        settings = getattr(customer, "invoice_settings", None)
        payment_method = getattr(settings, "default_payment_method", None)
        if isinstance(payment_method, str):
            payment_method_id = payment_method
        else:
            payment_method_id = getattr(payment_method, "id", None)
        if not payment_method_id:
            return None
        return PaymentProfile(stripe_customer_id=customer.id, stripe_payment_method_id=payment_method_id)

    async def charge(
        self,
        account: CreditAccount,
        amount: Decimal,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        if not account.stripe_customer_id or not account.stripe_payment_method_id:
            return ChargeResult.failed(amount, "No payment method on file")

        amount_cents = int((amount * 100).to_integral_value())
        intent_metadata = {
            "adspend_account_id": account.account_id,
            "adspend_customer_id": account.customer_id,
            "type": AD_SPEND_INTENT_TYPE,
            **(metadata or {}),
        }
        idempotency_key = f"adspend-{account.account_id}-{uuid.uuid4().hex}"
        return await asyncio.to_thread(
            self._create_intent,
            account,
            amount,
            amount_cents,
            description,
            intent_metadata,
            idempotency_key,
        )

    def _create_intent(
        self,
        account: CreditAccount,
        amount: Decimal,
        amount_cents: int,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult:
        stripe = self._get_stripe()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=account.currency.lower(),
                customer=account.stripe_customer_id,
                payment_method=account.stripe_payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            payment_intent = getattr(exc.error, "payment_intent", None) if exc.error else None
            intent_id = getattr(payment_intent, "id", None)
            logger.warning("Card declined for %s: %s", account.account_id, exc.user_message or exc)
            return ChargeResult.failed(amount, exc.user_message or "Card declined", charge_id=intent_id)
        except stripe.StripeError as exc:
            logger.error("Stripe charge failed for %s: %s", account.account_id, exc, exc_info=True)
            return ChargeResult.failed(amount, "Payment processor error")

        if intent.status != "succeeded":
            logger.warning("PaymentIntent %s for %s ended in status %s", intent.id, account.account_id, intent.status)
            return ChargeResult.failed(amount, f"Payment requires additional action ({intent.status})", charge_id=intent.id)

        logger.info("Charged %s to %s via PaymentIntent %s", amount, account.account_id, intent.id)
        return ChargeResult.succeeded(amount, intent.id)


def build_payment_processor(settings: APISettings) -> PaymentProcessor:
    """Stripe when billing is enabled, otherwise the manual processor."""
    if settings.billing_enabled:
        return StripePaymentProcessor(settings)
    logger.warning("Billing disabled; charges are approved without a payment processor")
    return ManualPaymentProcessor()
