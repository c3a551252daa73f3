"""
Error taxonomy shared by the server boundary and the client controller.

Services raise these; ``main`` maps each class to its HTTP status once, and
``client`` turns an error body back into the same class.
"""
from typing import Dict, Optional


class GameError(Exception):
    """Base class. ``code`` is the machine-readable ``error`` field."""

    code = "internal_error"
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, str]] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_payload(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(GameError):
    code = "invalid_request"
    default_message = "Validation failed"


class UnauthorizedError(GameError):
    code = "unauthenticated"
    default_message = "Authentication required"


class ForbiddenError(GameError):
    code = "forbidden"
    default_message = "Access forbidden"


class NotFoundError(GameError):
    code = "not_found"
    default_message = "Not found"


class ConflictError(GameError):
    code = "conflict"
    default_message = "Conflict"


class RateLimitedError(GameError):
    code = "rate_limited"
    default_message = "Too many requests"


ERROR_TYPES = (
    ValidationError,
    UnauthorizedError,
    ForbiddenError,
    NotFoundError,
    ConflictError,
    RateLimitedError,
)

_BY_CODE = {cls.code: cls for cls in ERROR_TYPES}


def from_payload(payload: dict) -> GameError:
    """Rebuild a typed error from an ``{error, message, details?}`` body."""
    cls = _BY_CODE.get(str(payload.get("error")), GameError)
    details = payload.get("details")
    return cls(payload.get("message"), details if isinstance(details, dict) else None)


def session_expired() -> ValidationError:
    # details key lets the client tell a dead lease apart from bad input
    return ValidationError("Session is not active", {"session": "Session is not active"})
