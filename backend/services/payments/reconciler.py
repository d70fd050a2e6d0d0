"""
Payment reconciliation.

Webhook deliveries and reconcile polls both end up in
``process_payment_event``. The whole check-and-mark-paid sequence runs under
the booking's row lock in one transaction, and the unique constraint on
``payment_provider_reference`` catches anything the application check
misses, so a reference marks at most one booking paid, once.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction, DatabaseError, IntegrityError
from django.utils import timezone

from bookings.models import Booking
from services.lifecycle.exceptions import BookingNotFoundError, InvalidTransitionError, StoreWriteError
from services.lifecycle.stages import ActorRole, CanonicalStage, PAID_STAGES
from services.lifecycle.status_resolver import resolve_stage
from services.lifecycle.store import lock_booking, commit_change
from services.lifecycle.transitions import validate_transition, fields_for_stage
from . import gateway
from .events import PaymentEvent
from .pricing import compute_breakdown

logger = logging.getLogger(__name__)


class Outcome:
    RECONCILED = 'reconciled'
    DUPLICATE_IGNORED = 'duplicate_ignored'
    FAILED = 'failed'


class FailureReason:
    NOT_FOUND = 'not_found'
    REFERENCE_CONFLICT = 'reference_conflict'
    INVALID_TRANSITION = 'invalid_transition'
    UNSUPPORTED_EVENT = 'unsupported_event'


@dataclass
class ReconcileResult:
    """Result object for payment reconciliation."""
    outcome: str
    booking: Optional[Booking] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILED


def expected_total_cents(booking: Booking) -> Optional[int]:
    """Total the rider should have been charged for the agreed price, if one exists."""
    base = booking.accepted_price_cents or booking.quoted_price_cents
    if not base:
        return None
    return compute_breakdown(base).total_cents


def process_payment_event(event: PaymentEvent) -> ReconcileResult:
    """
    Mark a booking paid for a captured payment.

    Duplicates are a success and leave no trace beyond an INFO log.

    Raises:
        StoreWriteError: the database could not be written; the caller retries
    """
    if not event.is_payment_success:
        return ReconcileResult(Outcome.FAILED, reason=FailureReason.UNSUPPORTED_EVENT)

    reference = event.provider_reference
    try:
        with transaction.atomic():
            try:
                booking = lock_booking(event.booking_identifier)
            except BookingNotFoundError:
                logger.warning("Payment %s names unknown booking %s", reference, event.booking_identifier)
                return ReconcileResult(Outcome.FAILED, reason=FailureReason.NOT_FOUND)

            holder_id = (
                Booking.objects.filter(payment_provider_reference=reference)
                .values_list('pk', flat=True)
                .first()
            )
            if holder_id is not None and holder_id != booking.pk:
                logger.error(
                    "Payment %s for booking %s is already recorded on booking %s",
                    reference, booking.pk, holder_id,
                )
                return ReconcileResult(Outcome.FAILED, booking=booking, reason=FailureReason.REFERENCE_CONFLICT)

            current = resolve_stage(booking)
            if holder_id == booking.pk or booking.paid_at or current in PAID_STAGES:
                logger.info("Duplicate payment event %s for booking %s ignored", reference, booking.pk)
                return ReconcileResult(Outcome.DUPLICATE_IGNORED, booking=booking)

            try:
                validate_transition(current, CanonicalStage.PAYMENT_CONFIRMED)
            except InvalidTransitionError:
                logger.error(
                    "Payment %s arrived for booking %s in stage %s; not applied",
                    reference, booking.pk, current.value,
                )
                return ReconcileResult(Outcome.FAILED, booking=booking, reason=FailureReason.INVALID_TRANSITION)

            metadata = {
                'provider_reference': reference,
                'event_type': event.event_type,
                'amount_cents': event.amount_cents,
                'currency': event.currency,
            }
            expected = expected_total_cents(booking)
            if expected is not None and event.amount_cents is not None and event.amount_cents != expected:
                logger.warning(
                    "Payment %s for booking %s is %s cents, expected %s",
                    reference, booking.pk, event.amount_cents, expected,
                )
                metadata.update({'amount_mismatch': True, 'expected_amount_cents': expected})

            fields = fields_for_stage(CanonicalStage.PAYMENT_CONFIRMED)
            fields.update({
                'paid_at': timezone.now(),
                'payment_provider_reference': reference,
                'paid_amount_cents': event.amount_cents,
                'paid_currency': event.currency,
            })
            commit_change(
                booking, fields, ActorRole.SYSTEM, current, CanonicalStage.PAYMENT_CONFIRMED,
                notes=f"Payment {reference} confirmed",
                metadata=metadata,
            )
    except IntegrityError:
        # Another delivery of the same reference committed first.
        logger.info("Duplicate payment event %s rejected by unique constraint", reference)
        return ReconcileResult(Outcome.DUPLICATE_IGNORED)
    except DatabaseError as exc:
        logger.exception("Could not record payment %s", reference)
        raise StoreWriteError(f"Could not record payment {reference}") from exc

    logger.info("Payment %s reconciled for booking %s", reference, booking.pk)
    return ReconcileResult(Outcome.RECONCILED, booking=booking)


def reconcile_reference(reference: str) -> bool:
    """
    Poll path: is the payment with this reference recorded?

    Unknown references are looked up at Stripe and, if the intent succeeded,
    applied through the same path as a webhook delivery.

    Raises:
        PaymentGatewayError: Stripe could not be reached
        StoreWriteError: the payment could not be recorded
    """
    if Booking.objects.filter(payment_provider_reference=reference).exists():
        return True

    event = gateway.fetch_payment(reference)
    if event is None:
        return False

    result = process_payment_event(event)
    return result.ok
