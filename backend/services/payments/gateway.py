"""Stripe access: webhook signature checks and PaymentIntent lookups."""

import logging
from typing import Optional

import stripe
from django.conf import settings

from .events import PaymentEvent
from .exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


def webhook_secret() -> str:
    return getattr(settings, 'STRIPE_WEBHOOK_SECRET', '') or ''


def verify_signature(payload: bytes, signature: Optional[str]) -> None:
    """
    Check the ``Stripe-Signature`` header against the raw request body.

    Raises stripe.SignatureVerificationError when the header is missing or
    does not match. Without a webhook secret, unsigned events pass only when
    STRIPE_WEBHOOK_REQUIRE_SIGNATURE is off; otherwise every event is refused.
    """
    secret = webhook_secret()
    if not secret:
        if getattr(settings, "STRIPE_WEBHOOK_REQUIRE_SIGNATURE", True):
            logger.error("Refusing webhook: STRIPE_WEBHOOK_SECRET is not configured")
            raise stripe.SignatureVerificationError("Webhook secret is not configured", signature, payload)
        return
    if not signature:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header", signature, payload)
    stripe.WebhookSignature.verify_header(payload.decode('utf-8'), signature, secret)


def _client() -> stripe.StripeClient:
    api_key = getattr(settings, 'STRIPE_SECRET_KEY', '')
    if not api_key:
        raise PaymentGatewayError("Stripe is not configured")
    return stripe.StripeClient(
        api_key,
        http_client=stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS),
        max_network_retries=1,
    )


def fetch_payment(reference: str) -> Optional[PaymentEvent]:
    """
    Look up a PaymentIntent and return it as a PaymentEvent if it succeeded.

    Returns None for intents that exist but have not been paid.
    """
    try:
        intent = _client().payment_intents.retrieve(reference)
    except stripe.InvalidRequestError:
        logger.info("Stripe has no payment intent %s", reference)
        return None
    except stripe.StripeError as exc:
        logger.exception("Stripe lookup failed for %s", reference)
        raise PaymentGatewayError(str(exc)) from exc

    if intent.status != 'succeeded':
        logger.info("Payment intent %s is %s", reference, intent.status)
        return None
    return PaymentEvent.from_stripe_object(intent.to_dict(), event_type='payment_intent.succeeded')
