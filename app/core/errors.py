"""
Domain error taxonomy for the call credit subsystem.

Every error carries the HTTP status it maps to, a stable ``error_kind`` for
clients and whether retrying the same request may succeed. The API layer
renders them via a single exception handler (see app/main.py); services raise
them and never build HTTP responses themselves.
"""
from typing import Any


class CallCreditError(Exception):
    status_code = 500
    error_kind = "internal_error"
    retryable = False

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.error_kind)
        self.message = message or self.error_kind
        self.context = context

    def as_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_kind,
            "detail": self.message,
            "retryable": self.retryable,
        }


class AuthenticationError(CallCreditError):
    status_code = 401
    error_kind = "authentication_required"


class AuthorizationError(CallCreditError):
    status_code = 403
    error_kind = "forbidden"


class NotFoundError(CallCreditError):
    status_code = 404
    error_kind = "not_found"


class SessionNotFoundError(NotFoundError):
    error_kind = "call_session_not_found"


class PaymentNotFoundError(NotFoundError):
    error_kind = "payment_not_found"


class ValidationError(CallCreditError):
    status_code = 400
    error_kind = "validation_error"


class AllocationError(ValidationError):
    error_kind = "invalid_allocation"


class InsufficientCreditsError(CallCreditError):
    status_code = 402
    error_kind = "insufficient_credits"

    def __init__(self, user_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {requested}, available: {available}",
            user_id=user_id,
            requested=requested,
            available=available,
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class ProviderUnavailableError(CallCreditError):
    """Telephony provider unreachable, timed out, or answered non-2xx."""

    status_code = 502
    error_kind = "provider_unavailable"
    retryable = True

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message, provider_status_code=status_code)
        self.provider_status_code = status_code
        self.body = body


class ConflictError(CallCreditError):
    status_code = 409
    error_kind = "conflict"


class PaymentConflictError(ConflictError):
    error_kind = "payment_already_processed"
