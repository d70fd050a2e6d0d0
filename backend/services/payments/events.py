"""Payment events as delivered by the webhook and the reconcile poll."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .exceptions import MalformedPaymentEventError

# Event types that mean money has been captured for a booking.
PAYMENT_SUCCEEDED_EVENTS = frozenset({
    'payment.succeeded',
    'payment_intent.succeeded',
    'checkout.session.completed',
    'charge.succeeded',
})

DEFAULT_EVENT_TYPE = 'payment.succeeded'


@dataclass(frozen=True)
class PaymentEvent:
    provider_reference: str
    booking_identifier: str
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    event_type: str = DEFAULT_EVENT_TYPE

    @property
    def is_payment_success(self) -> bool:
        return self.event_type in PAYMENT_SUCCEEDED_EVENTS

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'PaymentEvent':
        """
        Build an event from a webhook body.

        Accepts the flat form ``{eventType, providerReference,
        bookingIdentifier, amountCents, currency}`` and Stripe event objects
        whose payment carries ``booking_id`` or ``booking_code`` metadata.
        """
        if not isinstance(data, dict):
            raise MalformedPaymentEventError("Event body must be a JSON object")
        if 'data' in data and 'type' in data:
            return cls._from_stripe_event(data)

        event_type = data.get('eventType') or data.get('event_type') or DEFAULT_EVENT_TYPE
        return cls._build(
            reference=data.get('providerReference') or data.get('provider_reference'),
            booking=data.get('bookingIdentifier') or data.get('booking_identifier'),
            amount=data.get('amountCents', data.get('amount_cents')),
            currency=data.get('currency'),
            event_type=event_type,
        )

    @classmethod
    def _from_stripe_event(cls, event: Dict[str, Any]) -> 'PaymentEvent':
        obj = (event.get('data') or {}).get('object') or {}
        if not isinstance(obj, dict):
            raise MalformedPaymentEventError("Stripe event has no data object")
        return cls.from_stripe_object(obj, event_type=event.get('type') or '')

    @classmethod
    def from_stripe_object(cls, obj: Dict[str, Any], event_type: str = 'payment_intent.succeeded') -> 'PaymentEvent':
        """Build an event from a PaymentIntent, Checkout Session or Charge."""
        metadata = obj.get('metadata') or {}
        if obj.get('object') == 'payment_intent' or str(obj.get('id', '')).startswith('pi_'):
            reference = obj.get('id')
        else:
            reference = obj.get('payment_intent') or obj.get('id')
        amount = obj.get('amount_received', obj.get('amount_total', obj.get('amount')))
        return cls._build(
            reference=reference,
            booking=metadata.get('booking_id') or metadata.get('booking_code'),
            amount=amount,
            currency=obj.get('currency'),
            event_type=event_type,
        )

    @classmethod
    def _build(cls, reference, booking, amount, currency, event_type) -> 'PaymentEvent':
        if not reference or not isinstance(reference, str):
            raise MalformedPaymentEventError("providerReference is required")
        if booking is None or str(booking).strip() == '':
            raise MalformedPaymentEventError("bookingIdentifier is required")
        if amount is not None:
            if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
                raise MalformedPaymentEventError("amountCents must be a non-negative integer")
        return cls(
            provider_reference=reference,
            booking_identifier=str(booking).strip(),
            amount_cents=amount,
            currency=currency.upper() if isinstance(currency, str) and currency else None,
            event_type=str(event_type),
        )
