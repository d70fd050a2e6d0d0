"""Custom exceptions for the booking lifecycle."""


class BookingNotFoundError(Exception):
    """Raised when a booking cannot be found."""
    pass


class InvalidTransitionError(Exception):
    """Raised when a strict-path mutation would move a booking along an illegal edge."""

    def __init__(self, from_stage, to_stage, message=None):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(
            message or f"Cannot move booking from '{from_stage}' to '{to_stage}'"
        )


class UnknownFieldError(Exception):
    """Raised when a mutation names a field that is not a writable raw field."""
    pass


class StoreWriteError(Exception):
    """Raised when the atomic state + history write could not be committed."""
    pass


class ImmutableRecordError(Exception):
    """Raised on any attempt to rewrite history or hard-delete a booking."""
    pass


class InvalidFieldValueError(Exception):
    """Raised when a mutation gives a writable field a value it cannot store."""
    pass


class TransitionNotPermittedError(InvalidTransitionError):
    """Raised when the edge is legal but the acting role may not take it."""
    pass
