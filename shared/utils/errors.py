"""
shared/utils/errors.py
Typed domain errors for the booking core.

Every error carries a stable machine-readable code and the HTTP status the API
maps it to. Services raise these before mutating anything, so a caller may
re-fetch the booking and retry once the precondition holds.
"""

from typing import Any


class BookingError(Exception):
    """Base class for all recoverable booking-domain errors."""

    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(BookingError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(BookingError):
    """Non-positive weight or price, empty item set, out-of-range stars, etc."""

    code = "VALIDATION_ERROR"
    status_code = 422


class InvalidTransition(BookingError):
    """Status change not legal from the current state."""

    code = "INVALID_TRANSITION"
    status_code = 409


class TerminalStateError(InvalidTransition):
    """Mutation attempted on a completed or cancelled booking."""

    code = "TERMINAL_STATE"
    status_code = 409


class NotAuthorized(BookingError):
    """Caller is not the booking owner or not the assigned partner."""

    code = "NOT_AUTHORIZED"
    status_code = 403


class AlreadyAssigned(NotAuthorized):
    code = "ALREADY_ASSIGNED"
    status_code = 409


class AlreadySettled(BookingError):
    code = "ALREADY_SETTLED"
    status_code = 409


class AlreadyRated(BookingError):
    code = "ALREADY_RATED"
    status_code = 409


class BookingBusy(BookingError):
    """Another writer holds the booking; safe to retry."""

    code = "BOOKING_BUSY"
    status_code = 409
