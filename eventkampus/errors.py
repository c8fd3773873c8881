"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations

from typing import List, Optional


class EventKampusError(RuntimeError):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_payload(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(EventKampusError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class AuthError(EventKampusError):
    status_code = 401
    code = "AUTH_ERROR"
    default_message = "Authentication required"


class TokenExpiredError(AuthError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["expired"] = True
        return payload


class ForbiddenError(EventKampusError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "You do not have permission to perform this action"


class NotFoundError(EventKampusError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(EventKampusError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Resource already exists"


class CapacityError(EventKampusError):
    status_code = 409
    code = "SOLD_OUT"
    default_message = "Tickets of this type are sold out"


class RateLimitError(EventKampusError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many attempts, try again later"


class InternalError(EventKampusError):
    pass


class PaymentGatewayError(EventKampusError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"
    default_message = "The payment gateway rejected the request"


class UpstreamTimeoutError(EventKampusError):
    """A dependency (database lock or payment gateway) did not answer in time."""

    status_code = 504
    code = "TIMEOUT"
    default_message = "A downstream service timed out, try again"


__all__ = [
    "AuthError",
    "CapacityError",
    "ConflictError",
    "EventKampusError",
    "ForbiddenError",
    "InternalError",
    "NotFoundError",
    "PaymentGatewayError",
    "RateLimitError",
    "TokenExpiredError",
    "UpstreamTimeoutError",
    "ValidationError",
]
