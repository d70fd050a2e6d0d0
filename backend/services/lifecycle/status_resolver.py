"""
Canonical stage resolution.

A booking's lifecycle is spread over several raw columns that different
clients have written over time. ``resolve_stage`` is the one place that turns
those columns into a single stage; no other module should branch on the raw
columns directly.

Priority cascade, evaluated top to bottom, first match wins:

    1. Terminal       refunded, disputed, completed, cancelled, expired
    2. Ride progress  in_transit > passenger_onboard > driver_arrived_at_pickup
                      > driver_heading_to_pickup (most advanced value found in
                      ride_stage or either actor flag)
    3. Payment        all_set, then payment_confirmed
    4. Offer          offer_accepted, then offer_sent (explicit flag, or an
                      accepted price that differs from the quoted price)
    5. Acceptance     driver_accepted
    6. Default        pending

refunded and disputed sit above completed because they are only ever reached
from a finished ride and are recorded alongside the stale ride_stage.
"""

import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from .stages import CanonicalStage

logger = logging.getLogger(__name__)


RAW_FIELDS = (
    'legacy_status',
    'rider_stage_flag',
    'chauffeur_stage_flag',
    'ride_stage',
    'payment_confirmation_stage',
    'quoted_price_cents',
    'accepted_price_cents',
    'paid_at',
    'payment_provider_reference',
)

# Columns that carry a free-form status string.
_STATUS_COLUMNS = (
    'legacy_status',
    'ride_stage',
    'rider_stage_flag',
    'chauffeur_stage_flag',
    'payment_confirmation_stage',
)

_REFUNDED = {'refunded'}
_DISPUTED = {'disputed'}
_COMPLETED = {'completed', 'ride_completed'}
_CANCELLED = {
    'cancelled', 'canceled',
    'cancelled_by_driver', 'cancelled_by_passenger', 'cancelled_by_rider',
    'cancelled_user', 'cancelled_driver',
    'passenger_canceled', 'driver_canceled',
}
_EXPIRED = {'expired'}

# Most advanced first.
_RIDE_PROGRESS = (
    (CanonicalStage.IN_TRANSIT, {'in_transit', 'ride_in_progress'}),
    (CanonicalStage.PASSENGER_ONBOARD, {'passenger_onboard'}),
    (CanonicalStage.DRIVER_ARRIVED_AT_PICKUP, {'driver_arrived_at_pickup', 'arrived_at_pickup'}),
    (CanonicalStage.DRIVER_HEADING_TO_PICKUP, {'driver_heading_to_pickup', 'en_route'}),
)
_RIDE_PROGRESS_COLUMNS = ('ride_stage', 'rider_stage_flag', 'chauffeur_stage_flag')

_ALL_SET = {'all_set'}
_PAYMENT_CONFIRMED = {'passenger_paid', 'payment_confirmed', 'paid'}
_OFFER_ACCEPTED = {
    'offer_accepted', 'passenger_accepted',
    'payment_pending', 'awaiting_payment', 'waiting_for_payment',
}
_OFFER_SENT = {'offer_sent', 'price_awaiting_acceptance'}
_DRIVER_ACCEPTED = {'driver_accepted', 'accepted_by_driver', 'accepted', 'driver_assigned', 'assigned'}


def raw_fields_of(source: Any) -> Dict[str, Any]:
    """Extract the raw lifecycle columns from a Booking or a plain mapping."""
    if source is None:
        return {name: None for name in RAW_FIELDS}
    if isinstance(source, Mapping):
        return {name: source.get(name) for name in RAW_FIELDS}
    return {name: getattr(source, name, None) for name in RAW_FIELDS}


def _norm(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        text = str(value).strip().lower()
    except Exception:
        return None
    return text or None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _any_in(values, vocabulary) -> bool:
    return any(v in vocabulary for v in values if v is not None)


def resolve_stage(source: Any) -> CanonicalStage:
    """
    Derive the canonical stage from a booking's raw fields.

    Total: every input, including contradictory or half-populated rows and
    values of the wrong type, resolves to exactly one CanonicalStage.
    """
    fields = raw_fields_of(source)
    try:
        return _cascade(fields, booking_id=getattr(source, 'pk', None))
    except Exception:
        logger.exception("Stage resolution failed, falling back to pending: %r", fields)
        return CanonicalStage.PENDING


def _finished_stages(values) -> List[CanonicalStage]:
    return [
        stage for stage, vocab in (
            (CanonicalStage.COMPLETED, _COMPLETED),
            (CanonicalStage.CANCELLED, _CANCELLED),
            (CanonicalStage.EXPIRED, _EXPIRED),
        )
        if _any_in(values, vocab)
    ]


def terminal_conflicts(source: Any) -> List[str]:
    """Terminal stages that a booking's raw columns claim at the same time, if more than one."""
    fields = raw_fields_of(source)
    finished = _finished_stages([_norm(fields.get(name)) for name in _STATUS_COLUMNS])
    return [stage.value for stage in finished] if len(finished) > 1 else []


def _cascade(fields: Dict[str, Any], booking_id=None) -> CanonicalStage:
    status = {name: _norm(fields.get(name)) for name in _STATUS_COLUMNS}
    values = list(status.values())

    # 1. Terminal
    finished = _finished_stages(values)
    if len(finished) > 1:
        logger.warning(
            "Stale derivation on booking %s: contradictory terminal flags %s, resolving to %s",
            booking_id if booking_id is not None else "<unsaved>",
            [s.value for s in finished],
            finished[0].value,
        )

    if _any_in(values, _REFUNDED):
        return CanonicalStage.REFUNDED
    if _any_in(values, _DISPUTED):
        return CanonicalStage.DISPUTED
    if finished:
        return finished[0]

    # 2. Ride progress
    progress = [status[name] for name in _RIDE_PROGRESS_COLUMNS]
    for stage, vocab in _RIDE_PROGRESS:
        if _any_in(progress, vocab):
            return stage

    # 3. Payment
    if _any_in(values, _ALL_SET):
        return CanonicalStage.ALL_SET
    payment_flags = (
        status['payment_confirmation_stage'],
        status['rider_stage_flag'],
        status['legacy_status'],
    )
    if fields.get('paid_at') or _any_in(payment_flags, _PAYMENT_CONFIRMED):
        return CanonicalStage.PAYMENT_CONFIRMED

    # 4. Offer
    if _any_in(values, _OFFER_ACCEPTED):
        return CanonicalStage.OFFER_ACCEPTED
    accepted = _as_int(fields.get('accepted_price_cents'))
    quoted = _as_int(fields.get('quoted_price_cents'))
    if accepted and accepted != quoted:
        return CanonicalStage.OFFER_SENT
    if _any_in(values, _OFFER_SENT):
        return CanonicalStage.OFFER_SENT

    # 5. Acceptance
    if _any_in(values, _DRIVER_ACCEPTED):
        return CanonicalStage.DRIVER_ACCEPTED

    return CanonicalStage.PENDING


_STAGE_MESSAGES = {
    'rider': {
        CanonicalStage.PENDING: ("Ride Requested", "Waiting for a chauffeur to respond"),
        CanonicalStage.DRIVER_ACCEPTED: ("Chauffeur Accepted", "Your chauffeur is preparing an offer"),
        CanonicalStage.OFFER_SENT: ("Offer Received", "Review and confirm your ride"),
        CanonicalStage.OFFER_ACCEPTED: ("Offer Accepted", "Please complete your payment"),
        CanonicalStage.PAYMENT_CONFIRMED: ("Payment Received", "Waiting for the chauffeur to confirm"),
        CanonicalStage.ALL_SET: ("All Set", "Your ride is confirmed"),
        CanonicalStage.DRIVER_HEADING_TO_PICKUP: ("Chauffeur En Route", "Heading to your pickup location"),
        CanonicalStage.DRIVER_ARRIVED_AT_PICKUP: ("Chauffeur Arrived", "Waiting at your pickup location"),
        CanonicalStage.PASSENGER_ONBOARD: ("Ride Started", "Enjoy your ride"),
        CanonicalStage.IN_TRANSIT: ("In Transit", "On the way to your destination"),
        CanonicalStage.COMPLETED: ("Ride Completed", "Thank you for riding with us"),
        CanonicalStage.CANCELLED: ("Ride Cancelled", "You can request a new ride"),
        CanonicalStage.EXPIRED: ("Request Expired", "Please request a new ride"),
        CanonicalStage.REFUNDED: ("Refunded", "Your payment has been returned"),
        CanonicalStage.DISPUTED: ("Under Review", "Our team is reviewing this ride"),
    },
    'chauffeur': {
        CanonicalStage.PENDING: ("New Ride Request", "Please respond to the request"),
        CanonicalStage.DRIVER_ACCEPTED: ("Accepted", "Send your price offer"),
        CanonicalStage.OFFER_SENT: ("Offer Sent", "Waiting for the rider to confirm"),
        CanonicalStage.OFFER_ACCEPTED: ("Offer Accepted", "Waiting for payment"),
        CanonicalStage.PAYMENT_CONFIRMED: ("Payment Received", "Confirm to lock in the ride"),
        CanonicalStage.ALL_SET: ("Ready to Go", "Ride confirmed"),
        CanonicalStage.DRIVER_HEADING_TO_PICKUP: ("Heading to Pickup", "On the way to the rider"),
        CanonicalStage.DRIVER_ARRIVED_AT_PICKUP: ("Arrived at Pickup", "Waiting for the rider"),
        CanonicalStage.PASSENGER_ONBOARD: ("Rider Onboard", "Ride in progress"),
        CanonicalStage.IN_TRANSIT: ("In Transit", "Heading to destination"),
        CanonicalStage.COMPLETED: ("Ride Completed", "Well done"),
        CanonicalStage.CANCELLED: ("Ride Cancelled", "Ready for new requests"),
        CanonicalStage.EXPIRED: ("Request Expired", "Ready for new requests"),
        CanonicalStage.REFUNDED: ("Refunded", "The rider was refunded"),
        CanonicalStage.DISPUTED: ("Under Review", "An operator is reviewing this ride"),
    },
}


def describe_stage(stage: CanonicalStage, role: str) -> Dict[str, str]:
    """Headline and detail text for a stage, worded for the rider or the chauffeur."""
    messages = _STAGE_MESSAGES.get(role, _STAGE_MESSAGES['rider'])
    primary, secondary = messages.get(stage, ("Status Unknown", ""))
    return {"primary": primary, "secondary": secondary}
