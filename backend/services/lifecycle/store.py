"""
Lifecycle store - the only writer of booking lifecycle state.

Every write runs as one atomic unit:
    - lock the booking row
    - resolve the current stage and the stage the new raw fields produce
    - validate the edge (strict path only)
    - write the raw fields and the cached canonical stage
    - append one history entry
    - publish a change signal once the transaction commits

Reads never trust the cached ``canonical_stage``; they re-resolve the raw
fields every time.
"""

import logging
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from django.core.exceptions import ValidationError
from django.db import transaction, DatabaseError

from bookings.models import Booking, BookingStatusHistory

from .exceptions import (
    BookingNotFoundError,
    UnknownFieldError,
    InvalidFieldValueError,
    StoreWriteError,
    InvalidTransitionError,
)
from .stages import ActorRole, CanonicalStage
from .status_resolver import RAW_FIELDS, raw_fields_of, resolve_stage
from .transitions import check_actor_may_enter, validate_transition, fields_for_stage

logger = logging.getLogger(__name__)


# Written only by the payment reconciler through commit_change.
PAYMENT_FIELDS = frozenset({
    'paid_at',
    'payment_provider_reference',
    'paid_amount_cents',
    'paid_currency',
})

# Raw columns plus the trip details callers may write.
MUTABLE_FIELDS = (frozenset(RAW_FIELDS) | frozenset({
    'pickup_address',
    'dropoff_address',
    'pickup_time',
    'passenger_count',
})) - PAYMENT_FIELDS


@dataclass
class BookingSnapshot:
    """Current state of a booking as seen by readers."""
    booking: Booking
    raw_fields: Dict[str, Any]
    stage: CanonicalStage


# ===================== Helpers =====================

def _lookup(identifier) -> Dict[str, Any]:
    """Query kwargs for a booking id or booking code."""
    if isinstance(identifier, int) or (isinstance(identifier, str) and identifier.isdigit()):
        return {'pk': int(identifier)}
    return {'booking_code': str(identifier)}


def _clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown fields and coerce values to what the columns store."""
    payment = sorted(set(fields) & PAYMENT_FIELDS)
    if payment:
        raise UnknownFieldError(f"Payment fields are recorded from processor events only: {', '.join(payment)}")
    unknown = sorted(set(fields) - MUTABLE_FIELDS)
    if unknown:
        raise UnknownFieldError(f"Fields cannot be written: {', '.join(unknown)}")

    cleaned = {}
    for name, value in fields.items():
        try:
            cleaned[name] = Booking._meta.get_field(name).clean(value, None)
        except ValidationError as exc:
            raise InvalidFieldValueError(f"{name}: {'; '.join(exc.messages)}")
    return cleaned


@contextmanager
def _store_errors(booking_id):
    """Surface database failures as StoreWriteError; the atomic block has already rolled back."""
    try:
        yield
    except DatabaseError as exc:
        logger.exception("Lifecycle write failed for booking %s", booking_id)
        raise StoreWriteError(f"Could not save booking {booking_id}") from exc


def _claims(booking: Booking, actor, actor_role: str) -> bool:
    """True when a chauffeur is acting on a booking nobody has claimed yet."""
    return (
        actor is not None
        and actor_role == ActorRole.CHAUFFEUR
        and getattr(actor, 'role', None) == ActorRole.CHAUFFEUR
        and booking.chauffeur_id is None
    )


def _publish_on_commit(booking_id) -> None:
    from realtime.change_feed import publish_booking_changed
    transaction.on_commit(lambda: publish_booking_changed(booking_id))


def lock_booking(identifier) -> Booking:
    """
    Fetch and row-lock a booking by id or booking code.

    Must be called inside ``transaction.atomic``.
    """
    try:
        return Booking.objects.select_for_update().get(**_lookup(identifier))
    except (Booking.DoesNotExist, ValueError):
        raise BookingNotFoundError(f"Booking {identifier} not found")


def commit_change(
    booking: Booking,
    fields: Dict[str, Any],
    actor_role: str,
    from_stage: CanonicalStage,
    to_stage: CanonicalStage,
    actor=None,
    notes: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> BookingStatusHistory:
    """
    Write raw fields, the cached stage and one history entry on a locked booking.

    Callers own the transaction and have already validated the edge.
    """
    update_fields = list(fields)
    for name, value in fields.items():
        setattr(booking, name, value)

    # A chauffeur acting on an unassigned booking claims it.
    if _claims(booking, actor, actor_role):
        booking.chauffeur = actor
        update_fields.append('chauffeur')

    booking.canonical_stage = to_stage
    booking.save(update_fields=update_fields + ['canonical_stage', 'updated_at'])

    entry = BookingStatusHistory.objects.create(
        booking=booking,
        recorded_stage=to_stage,
        actor_role=actor_role,
        actor=actor,
        notes=notes or '',
        metadata={
            'from_stage': str(from_stage.value),
            'fields': sorted(fields),
            **(metadata or {}),
        },
    )
    _publish_on_commit(booking.pk)

    if from_stage != to_stage:
        logger.info(
            "Booking %s moved %s -> %s by %s",
            booking.pk, from_stage.value, to_stage.value, actor_role,
        )
    return entry


# ===================== Reads =====================

def get_current(booking_id) -> BookingSnapshot:
    """Load a booking and resolve its stage from the raw fields."""
    try:
        booking = Booking.objects.select_related('rider', 'chauffeur', 'operator').get(**_lookup(booking_id))
    except (Booking.DoesNotExist, ValueError):
        raise BookingNotFoundError(f"Booking {booking_id} not found")
    raw = raw_fields_of(booking)
    return BookingSnapshot(booking=booking, raw_fields=raw, stage=resolve_stage(booking))


def get_history(booking_id, after_id: Optional[int] = None) -> List[BookingStatusHistory]:
    """
    History entries for a booking in creation order.

    ``after_id`` resumes a listing after the last entry a caller has seen.
    """
    try:
        booking = Booking.objects.only('id').get(**_lookup(booking_id))
    except (Booking.DoesNotExist, ValueError):
        raise BookingNotFoundError(f"Booking {booking_id} not found")
    entries = BookingStatusHistory.objects.filter(booking=booking)
    if after_id is not None:
        entries = entries.filter(id__gt=after_id)
    return list(entries.select_related('actor').order_by('id'))


# ===================== Writes =====================

def create_booking(
    rider,
    pickup_address: str = "",
    dropoff_address: str = "",
    pickup_time=None,
    passenger_count: int = 1,
    quoted_price_cents: Optional[int] = None,
    chauffeur=None,
    operator=None,
    notes: Optional[str] = None,
) -> Booking:
    """
    Create a booking in the pending stage and record its first history entry.

    Args:
        rider: User requesting the ride
        pickup_address: Human-readable pickup address
        dropoff_address: Human-readable dropoff address
        pickup_time: Requested pickup datetime
        passenger_count: Number of passengers
        quoted_price_cents: Initial quote, if any
        chauffeur: Chauffeur requested directly, if any
        operator: Operator handling the booking, if any

    Returns:
        The saved Booking
    """
    with _store_errors('<new>'):
        with transaction.atomic():
            booking = Booking.objects.create(
                rider=rider,
                chauffeur=chauffeur,
                operator=operator,
                pickup_address=pickup_address,
                dropoff_address=dropoff_address,
                pickup_time=pickup_time,
                passenger_count=passenger_count,
                quoted_price_cents=quoted_price_cents,
                legacy_status='pending',
                canonical_stage=CanonicalStage.PENDING,
            )
            BookingStatusHistory.objects.create(
                booking=booking,
                recorded_stage=CanonicalStage.PENDING,
                actor_role=ActorRole.RIDER,
                actor=rider,
                notes=notes or '',
                metadata={'event': 'created'},
            )
            _publish_on_commit(booking.pk)

    logger.info("Booking %s created by rider %s", booking.booking_code, rider.pk)
    return booking


def mutate(
    booking_id,
    fields: Dict[str, Any],
    actor_role: str,
    notes: Optional[str] = None,
    actor=None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Booking:
    """
    Apply raw-field changes through the strict path.

    Raises:
        UnknownFieldError: a field is not in MUTABLE_FIELDS
        InvalidFieldValueError: a value cannot be stored in its column
        BookingNotFoundError: no such booking
        InvalidTransitionError: the resulting stage is not reachable from the current one
        StoreWriteError: the write could not be committed; nothing was changed
    """
    fields = _clean_fields(fields)

    with _store_errors(booking_id):
        with transaction.atomic():
            booking = lock_booking(booking_id)
            from_stage = resolve_stage(booking)
            to_stage = resolve_stage({**raw_fields_of(booking), **fields})
            validate_transition(from_stage, to_stage)
            check_actor_may_enter(from_stage, to_stage, actor_role, claiming=_claims(booking, actor, actor_role))
            commit_change(
                booking, fields, actor_role, from_stage, to_stage,
                actor=actor, notes=notes, metadata=metadata,
            )
    return booking


def advance(
    booking_id,
    to_stage,
    actor_role: str,
    actor=None,
    notes: Optional[str] = None,
    fields: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Booking:
    """
    Move a booking to ``to_stage`` using the standard raw-field writes for it.

    Extra ``fields`` (an accepted price, a pickup time) are written in the
    same unit.
    """
    to_stage = CanonicalStage(to_stage)
    changes = fields_for_stage(to_stage)
    changes.update(fields or {})
    changes = _clean_fields(changes)

    with _store_errors(booking_id):
        with transaction.atomic():
            booking = lock_booking(booking_id)
            from_stage = resolve_stage(booking)
            validate_transition(from_stage, to_stage)
            check_actor_may_enter(from_stage, to_stage, actor_role, claiming=_claims(booking, actor, actor_role))
            resolved = resolve_stage({**raw_fields_of(booking), **changes})
            if resolved != to_stage:
                raise InvalidTransitionError(
                    from_stage, to_stage,
                    f"Booking would resolve to '{resolved.value}', not '{to_stage.value}'",
                )
            commit_change(
                booking, changes, actor_role, from_stage, to_stage,
                actor=actor, notes=notes, metadata=metadata,
            )
    return booking


def apply_legacy_fields(
    booking_id,
    fields: Dict[str, Any],
    actor_role: str,
    notes: Optional[str] = None,
    actor=None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Booking:
    """
    Write raw fields without transition validation.

    Deprecated. Kept for clients that still post raw status columns; the
    history entry is tagged ``legacy_passthrough`` so these writes can be
    found and retired.
    """
    warnings.warn(
        "apply_legacy_fields bypasses transition validation; use mutate or advance",
        DeprecationWarning,
        stacklevel=2,
    )
    fields = _clean_fields(fields)

    with _store_errors(booking_id):
        with transaction.atomic():
            booking = lock_booking(booking_id)
            from_stage = resolve_stage(booking)
            to_stage = resolve_stage({**raw_fields_of(booking), **fields})
            logger.warning(
                "Legacy passthrough on booking %s by %s: %s -> %s (fields: %s)",
                booking.pk, actor_role, from_stage.value, to_stage.value, sorted(fields),
            )
            commit_change(
                booking, fields, actor_role, from_stage, to_stage,
                actor=actor, notes=notes,
                metadata={**(metadata or {}), 'legacy_passthrough': True},
            )
    return booking
