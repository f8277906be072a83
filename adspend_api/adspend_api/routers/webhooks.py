"""Stripe webhook receiver for ad-spend charges."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request

from adspend_api.dependencies import RecoveryDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    recovery: RecoveryDep,
) -> dict[str, str]:
    """Verify the Stripe signature and apply the event.

    Authenticated by the ``Stripe-Signature`` header instead of a customer
    id.  Redelivered events are safe: credits are keyed on the PaymentIntent
    id.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    import stripe

    stripe.api_key = settings.stripe_secret_key.get_secret_value()
    try:
        stripe.Webhook.construct_event(
            payload=body,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret.get_secret_value(),
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    # The signature covers the raw body, so the plain JSON is as trusted as the SDK object.
    event = json.loads(body)
    logger.info("Stripe webhook received: %s (%s)", event.get("type"), event.get("id"))
    return await recovery.handle_webhook_event(event)
