"""Celery tasks for payment reconciliation."""

from celery import shared_task
import logging

from services.lifecycle.exceptions import StoreWriteError
from services.payments.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


@shared_task(
    autoretry_for=(StoreWriteError, PaymentGatewayError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=6,
)
def reconcile_payment_reference_task(reference: str) -> bool:
    """
    Backstop for a webhook delivery that could not be recorded.

    Scheduled by the webhook when the store write fails; polls Stripe for the
    reference and applies it through the same idempotent path.
    """
    from services.payments.reconciler import reconcile_reference

    paid = reconcile_reference(reference)
    if paid:
        logger.info("Payment %s reconciled by background task", reference)
    else:
        logger.info("Payment %s not paid yet", reference)
    return paid
