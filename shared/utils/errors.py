"""
shared/utils/errors.py
Domain errors raised by the lifecycle engine and its collaborators.
Each carries the HTTP status and machine code the API renders.
"""

from typing import Any, Optional


class BookingError(Exception):
    status_code: int = 400
    code: str = "BAD_REQUEST"
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, *, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFound(BookingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class Unauthorized(BookingError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class Forbidden(BookingError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Not authorized for this action"


class InvalidState(BookingError):
    status_code = 409
    code = "INVALID_STATUS"
    default_message = "Booking is not in a state that allows this action"


class ValidationError(BookingError):
    status_code = 422
    code = "VALIDATION_ERROR"
    default_message = "Invalid input"


class Conflict(BookingError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Booking was modified by another request. Please retry."


class Blocked(BookingError):
    """Denylist hit. The message is deliberately generic."""
    status_code = 403
    code = "BLOCKED"
    default_message = "Unable to create booking. Please contact support."

    def __init__(self, message: Optional[str] = None, *, details: Any = None):
        # Never let a caller-supplied reason leak into the response
        super().__init__(self.default_message)
