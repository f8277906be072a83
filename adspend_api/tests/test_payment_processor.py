"""Tests for the payment processor adapters.

The Stripe SDK is replaced through ``_get_stripe`` so no network calls or
API keys are involved.
"""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from adspend_core.models.account import CreditAccount
from pydantic import SecretStr

from adspend_api.config import APISettings
from adspend_api.services.payment_processor import (
    ManualPaymentProcessor,
    StripePaymentProcessor,
    build_payment_processor,
)


class FakeStripeError(Exception):
    pass


class FakeCardError(FakeStripeError):
    def __init__(self, user_message: str, intent_id: str | None = None) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.error = SimpleNamespace(payment_intent=SimpleNamespace(id=intent_id)) if intent_id else None


def _account(**overrides) -> CreditAccount:
    values = {
        "account_id": "acct-0001",
        "customer_id": "cust-1",
        "initial_credit_amount": Decimal("350.00"),
        "current_balance": Decimal("350.00"),
        "stripe_customer_id": "cus_123",
        "stripe_payment_method_id": "pm_456",
    }
    values.update(overrides)
    return CreditAccount(**values)


def _mock_stripe() -> MagicMock:
    stripe = MagicMock()
    stripe.CardError = FakeCardError
    stripe.StripeError = FakeStripeError
    return stripe


@pytest.fixture()
def stripe_settings() -> APISettings:
    return APISettings(billing_enabled=True, stripe_secret_key=SecretStr("sk_test_123"))


class TestStripePaymentProcessor:
    @pytest.mark.asyncio
    async def test_successful_intent(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        stripe.PaymentIntent.create.return_value = SimpleNamespace(id="pi_ok", status="succeeded")
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            result = await processor.charge(_account(), Decimal("123.45"), "Ad spend credit top-up")

        assert result.success is True
        assert result.charge_id == "pi_ok"
        kwargs = stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs["amount"] == 12345
        assert kwargs["currency"] == "usd"
        assert kwargs["customer"] == "cus_123"
        assert kwargs["payment_method"] == "pm_456"
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["metadata"]["adspend_account_id"] == "acct-0001"
        assert kwargs["idempotency_key"].startswith("adspend-acct-0001-")

    @pytest.mark.asyncio
    async def test_card_declined(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        stripe.PaymentIntent.create.side_effect = FakeCardError("Your card was declined.", "pi_declined")
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            result = await processor.charge(_account(), Decimal("50"), "retry")

        assert result.success is False
        assert result.error == "Your card was declined."
        assert result.charge_id == "pi_declined"

    @pytest.mark.asyncio
    async def test_api_error_is_a_failure(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        stripe.PaymentIntent.create.side_effect = FakeStripeError("connection reset")
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            result = await processor.charge(_account(), Decimal("50"), "retry")

        assert result.success is False
        assert result.error == "Payment processor error"

    @pytest.mark.asyncio
    async def test_requires_action_is_a_failure(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        stripe.PaymentIntent.create.return_value = SimpleNamespace(id="pi_3ds", status="requires_action")
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            result = await processor.charge(_account(), Decimal("50"), "retry")

        assert result.success is False
        assert "requires_action" in result.error

    @pytest.mark.asyncio
    async def test_missing_payment_method_skips_stripe(self, stripe_settings) -> None:
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe") as get_stripe:
            result = await processor.charge(_account(stripe_payment_method_id=None), Decimal("50"), "retry")

        assert result.success is False
        assert result.error == "No payment method on file"
        get_stripe.assert_not_called()


class TestStripePaymentProfile:
    @pytest.mark.asyncio
    async def test_default_card_of_tagged_customer(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        customer = SimpleNamespace(id="cus_789", invoice_settings=SimpleNamespace(default_payment_method="pm_default"))
        stripe.Customer.search.return_value = SimpleNamespace(data=[customer])
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            profile = await processor.resolve_payment_profile("cust-1")

        assert profile.stripe_customer_id == "cus_789"
        assert profile.stripe_payment_method_id == "pm_default"
        query = stripe.Customer.search.call_args.kwargs["query"]
        assert query == "metadata['adspend_customer_id']:'cust-1'"

    @pytest.mark.asyncio
    async def test_no_default_card(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        customer = SimpleNamespace(id="cus_789", invoice_settings=SimpleNamespace(default_payment_method=None))
        stripe.Customer.search.return_value = SimpleNamespace(data=[customer])
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            assert await processor.resolve_payment_profile("cust-1") is None

    @pytest.mark.asyncio
    async def test_ambiguous_tag_resolves_nothing(self, stripe_settings) -> None:
        stripe = _mock_stripe()
        card = SimpleNamespace(default_payment_method="pm_x")
        stripe.Customer.search.return_value = SimpleNamespace(
            data=[SimpleNamespace(id="cus_a", invoice_settings=card), SimpleNamespace(id="cus_b", invoice_settings=card)]
        )
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe", return_value=stripe):
            assert await processor.resolve_payment_profile("cust-1") is None

    @pytest.mark.asyncio
    async def test_quote_in_customer_id_never_queries(self, stripe_settings) -> None:
        processor = StripePaymentProcessor(stripe_settings)

        with patch.object(processor, "_get_stripe") as get_stripe:
            assert await processor.resolve_payment_profile("cust' OR email:'x") is None
        get_stripe.assert_not_called()


class TestManualProcessor:
    @pytest.mark.asyncio
    async def test_profile_has_no_processor_references(self) -> None:
        profile = await ManualPaymentProcessor().resolve_payment_profile("cust-1")

        assert profile is not None
        assert profile.stripe_customer_id is None

    @pytest.mark.asyncio
    async def test_always_approves_with_manual_reference(self) -> None:
        result = await ManualPaymentProcessor().charge(_account(), Decimal("75"), "top-up")

        assert result.success is True
        assert result.charge_id.startswith("manual:")

    def test_factory_selects_by_billing_flag(self, stripe_settings) -> None:
        assert isinstance(build_payment_processor(stripe_settings), StripePaymentProcessor)
        assert isinstance(build_payment_processor(APISettings(billing_enabled=False)), ManualPaymentProcessor)
