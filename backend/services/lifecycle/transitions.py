"""
Legal stage adjacency for the booking lifecycle.

The strict mutation path validates every stage change against
``ALLOWED_TRANSITIONS``. Staying in the same stage is allowed for live
bookings (a revised quote, a note) but never for terminal ones.
"""

from typing import Dict, FrozenSet, Any

from .exceptions import InvalidTransitionError, TransitionNotPermittedError
from .stages import ActorRole, CanonicalStage as S, TERMINAL_STAGES


ALLOWED_TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.DRIVER_ACCEPTED, S.OFFER_SENT, S.CANCELLED, S.EXPIRED}),
    S.DRIVER_ACCEPTED: frozenset({S.OFFER_SENT, S.CANCELLED, S.EXPIRED}),
    S.OFFER_SENT: frozenset({S.OFFER_ACCEPTED, S.CANCELLED, S.EXPIRED}),
    S.OFFER_ACCEPTED: frozenset({S.PAYMENT_CONFIRMED, S.CANCELLED, S.EXPIRED}),
    S.PAYMENT_CONFIRMED: frozenset({S.ALL_SET, S.REFUNDED}),
    S.ALL_SET: frozenset({S.DRIVER_HEADING_TO_PICKUP, S.CANCELLED, S.REFUNDED}),
    S.DRIVER_HEADING_TO_PICKUP: frozenset({S.DRIVER_ARRIVED_AT_PICKUP, S.CANCELLED}),
    S.DRIVER_ARRIVED_AT_PICKUP: frozenset({S.PASSENGER_ONBOARD, S.CANCELLED}),
    S.PASSENGER_ONBOARD: frozenset({S.IN_TRANSIT, S.COMPLETED}),
    S.IN_TRANSIT: frozenset({S.COMPLETED}),
    # Terminal stages
    S.COMPLETED: frozenset({S.REFUNDED, S.DISPUTED}),
    S.CANCELLED: frozenset({S.REFUNDED}),
    S.EXPIRED: frozenset(),
    S.REFUNDED: frozenset(),
    S.DISPUTED: frozenset({S.REFUNDED}),
}


# Raw-field writes that move a booking into each stage. Used by callers that
# think in stages (the advance API, the payment reconciler) so they never
# hand-assemble raw columns.
STAGE_FIELD_UPDATES: Dict[S, Dict[str, Any]] = {
    S.DRIVER_ACCEPTED: {
        'legacy_status': 'pending',
        'chauffeur_stage_flag': 'driver_accepted',
    },
    S.OFFER_SENT: {
        'legacy_status': 'offer_sent',
        'chauffeur_stage_flag': 'offer_sent',
    },
    S.OFFER_ACCEPTED: {
        'legacy_status': 'payment_pending',
        'rider_stage_flag': 'offer_accepted',
        'payment_confirmation_stage': 'waiting_for_payment',
    },
    S.PAYMENT_CONFIRMED: {
        'rider_stage_flag': 'payment_confirmed',
        'payment_confirmation_stage': 'passenger_paid',
    },
    S.ALL_SET: {
        'legacy_status': 'all_set',
        'rider_stage_flag': 'all_set',
        'chauffeur_stage_flag': 'all_set',
        'payment_confirmation_stage': 'all_set',
    },
    S.DRIVER_HEADING_TO_PICKUP: {'ride_stage': 'driver_heading_to_pickup'},
    S.DRIVER_ARRIVED_AT_PICKUP: {'ride_stage': 'driver_arrived_at_pickup'},
    S.PASSENGER_ONBOARD: {'ride_stage': 'passenger_onboard'},
    S.IN_TRANSIT: {'ride_stage': 'in_transit'},
    S.COMPLETED: {'legacy_status': 'completed', 'ride_stage': 'completed'},
    S.CANCELLED: {'legacy_status': 'cancelled'},
    S.EXPIRED: {'legacy_status': 'expired'},
    S.REFUNDED: {'legacy_status': 'refunded'},
    S.DISPUTED: {'legacy_status': 'disputed'},
}


def allowed_next_stages(current) -> FrozenSet[S]:
    """Stages reachable in one step from ``current``."""
    try:
        return ALLOWED_TRANSITIONS[S(current)]
    except ValueError:
        return frozenset()


def is_valid_transition(from_stage, to_stage) -> bool:
    try:
        from_stage, to_stage = S(from_stage), S(to_stage)
    except ValueError:
        return False
    if from_stage == to_stage:
        return from_stage not in TERMINAL_STAGES
    return to_stage in ALLOWED_TRANSITIONS[from_stage]


def validate_transition(from_stage, to_stage) -> None:
    """Raise InvalidTransitionError unless ``from_stage -> to_stage`` is legal."""
    if not is_valid_transition(from_stage, to_stage):
        if from_stage == to_stage:
            raise InvalidTransitionError(
                from_stage, to_stage,
                f"Booking is {from_stage} and can no longer be modified",
            )
        raise InvalidTransitionError(from_stage, to_stage)


def fields_for_stage(stage) -> Dict[str, Any]:
    """Copy of the raw-field writes that produce ``stage``."""
    return dict(STAGE_FIELD_UPDATES.get(S(stage), {}))


# Stages only the payment reconciler may move a booking into.
SYSTEM_ONLY_STAGES: FrozenSet[S] = frozenset({S.PAYMENT_CONFIRMED})

# Moves a chauffeur may make on a booking nobody has claimed yet.
CLAIM_STAGES: FrozenSet[S] = frozenset({S.DRIVER_ACCEPTED, S.OFFER_SENT})


def check_actor_may_enter(from_stage, to_stage, actor_role, claiming: bool = False) -> None:
    """
    Raise TransitionNotPermittedError when ``actor_role`` may not take a legal edge.

    ``claiming`` is set when a chauffeur acts on an unassigned booking; the
    only moves open to them then are the ones that claim it.
    """
    from_stage, to_stage = S(from_stage), S(to_stage)
    if to_stage in SYSTEM_ONLY_STAGES and to_stage != from_stage and actor_role != ActorRole.SYSTEM:
        raise TransitionNotPermittedError(
            from_stage, to_stage,
            f"Only a confirmed processor payment can move a booking to '{to_stage.value}'",
        )
    if claiming and to_stage not in CLAIM_STAGES:
        raise TransitionNotPermittedError(
            from_stage, to_stage,
            "Accept or quote this booking before changing it",
        )
