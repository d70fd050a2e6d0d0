"""
Booking lifecycle service - canonical stage, transitions and persistence.

This module handles:
    - Resolving the canonical stage from raw booking columns
    - Validating stage transitions
    - Writing lifecycle changes with their history entry
    - Reading current state and history
"""

from .stages import CanonicalStage, ActorRole, TERMINAL_STAGES, PAID_STAGES

from .status_resolver import resolve_stage, describe_stage

from .transitions import (
    ALLOWED_TRANSITIONS,
    allowed_next_stages,
    is_valid_transition,
    validate_transition,
    check_actor_may_enter,
)

from .exceptions import (
    BookingNotFoundError,
    InvalidTransitionError,
    UnknownFieldError,
    InvalidFieldValueError,
    StoreWriteError,
    ImmutableRecordError,
    TransitionNotPermittedError,
)

__all__ = [
    # Stages
    "CanonicalStage",
    "ActorRole",
    "TERMINAL_STAGES",
    "PAID_STAGES",
    # Resolution
    "resolve_stage",
    "describe_stage",
    # Transitions
    "ALLOWED_TRANSITIONS",
    "allowed_next_stages",
    "is_valid_transition",
    "validate_transition",
    "check_actor_may_enter",
    # Exceptions
    "BookingNotFoundError",
    "InvalidTransitionError",
    "UnknownFieldError",
    "InvalidFieldValueError",
    "StoreWriteError",
    "ImmutableRecordError",
    "TransitionNotPermittedError",
]
