"""Payments REST API: processor webhook, reconcile poll, price breakdown."""

import logging

import stripe
from django.conf import settings
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, authentication_classes
from rest_framework.exceptions import ParseError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from services.lifecycle.exceptions import StoreWriteError
from services.payments import gateway
from services.payments.events import PaymentEvent
from services.payments.exceptions import MalformedPaymentEventError, PaymentGatewayError
from services.payments.pricing import compute_breakdown, format_breakdown
from services.payments.reconciler import process_payment_event, reconcile_reference
from .serializers import PricingQuerySerializer, ReconcileQuerySerializer
from .tasks import reconcile_payment_reference_task

logger = logging.getLogger(__name__)


def _error(code: str, message, status_code: int) -> Response:
    return Response({"error": code, "message": message}, status=status_code)


def _schedule_backstop(reference: str) -> None:
    try:
        reconcile_payment_reference_task.apply_async(
            args=[reference],
            countdown=settings.PAYMENT_RECONCILE_RETRY_SECONDS,
        )
    except Exception:
        logger.exception("Could not schedule reconcile task for %s", reference)


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def payment_webhook(request):
    """
    Card processor webhook.

    Answers 200 for every well-formed event, including duplicates and events
    that could not be applied, so the processor stops redelivering. A store
    failure answers 503 so the processor retries; a reconcile task is queued
    as well.
    """
    payload = request.body

    try:
        gateway.verify_signature(payload, request.META.get('HTTP_STRIPE_SIGNATURE'))
    except stripe.SignatureVerificationError:
        logger.warning("Rejected webhook with invalid Stripe signature")
        return _error("invalid_signature", "Signature verification failed", status.HTTP_400_BAD_REQUEST)

    try:
        event = PaymentEvent.from_payload(request.data)
    except (ParseError, MalformedPaymentEventError) as exc:
        return _error("malformed_event", str(exc), status.HTTP_400_BAD_REQUEST)

    if not event.is_payment_success:
        logger.debug("Ignoring %s event %s", event.event_type, event.provider_reference)
        return Response({"received": True, "outcome": "ignored"})

    try:
        result = process_payment_event(event)
    except StoreWriteError:
        _schedule_backstop(event.provider_reference)
        return _error(
            "store_write_failure", "Payment could not be recorded; retry later",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({
        "received": True,
        "outcome": result.outcome,
        "reason": result.reason,
        "bookingId": result.booking.pk if result.booking is not None else None,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def reconcile_payment(request):
    """Poll path: has the payment with this reference been recorded?"""
    serializer = ReconcileQuerySerializer(data=request.query_params)
    if not serializer.is_valid():
        return _error("invalid_request", serializer.errors, status.HTTP_400_BAD_REQUEST)
    reference = serializer.validated_data["reference"]

    try:
        paid = reconcile_reference(reference)
    except PaymentGatewayError as exc:
        return _error("processor_unavailable", str(exc), status.HTTP_502_BAD_GATEWAY)
    except StoreWriteError:
        return _error(
            "store_write_failure", "Payment could not be recorded; retry later",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"reference": reference, "paid": paid})


@api_view(['GET'])
@permission_classes([AllowAny])
def pricing_breakdown(request):
    """Fee breakdown for a base estimate, in cents and formatted."""
    serializer = PricingQuerySerializer(data=request.query_params)
    if not serializer.is_valid():
        return _error("invalid_request", serializer.errors, status.HTTP_400_BAD_REQUEST)

    breakdown = compute_breakdown(serializer.validated_data["baseEstimateCents"])
    return Response({
        "baseEstimateCents": breakdown.base_estimate_cents,
        "dispatcherFeeCents": breakdown.dispatcher_fee_cents,
        "appFeeCents": breakdown.app_fee_cents,
        "subtotalCents": breakdown.subtotal_cents,
        "cardFeeCents": breakdown.card_fee_cents,
        "totalCents": breakdown.total_cents,
        "formatted": format_breakdown(breakdown),
    })
