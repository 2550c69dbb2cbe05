"""Error taxonomy raised by the core and mapped to responses at the edge."""

from typing import Any


class MonetizationError(Exception):
    """Base class for every business rule failure.

    Raising one inside a unit of work aborts the whole transaction.
    """

    code = "monetization_error"
    default_message = "Monetization operation failed"
    http_status = 400

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details or None}


class InsufficientFunds(MonetizationError):
    code = "insufficient_funds"
    default_message = "Insufficient balance"
    http_status = 402


class InvalidAmount(MonetizationError):
    code = "invalid_amount"
    default_message = "Amount must be a positive number of minor units"


class InvalidRequest(MonetizationError):
    code = "invalid_request"
    default_message = "Invalid request"


class Unauthorized(MonetizationError):
    code = "unauthorized"
    default_message = "You are not a participant of this resource"
    http_status = 403


class PricingNotConfigured(MonetizationError):
    code = "pricing_not_configured"
    default_message = "This user does not have monetization enabled"


class DurationRequired(MonetizationError):
    code = "duration_required"
    default_message = "Duration is required for metered content"


class SessionNotFound(MonetizationError):
    code = "session_not_found"
    default_message = "Session not found"
    http_status = 404


class SessionExpired(MonetizationError):
    code = "session_expired"
    default_message = "Session time has expired"
    http_status = 409


class SessionConflict(MonetizationError):
    code = "session_conflict"
    default_message = "An active session with this user already exists"
    http_status = 409


class SessionNotRunning(MonetizationError):
    code = "session_not_running"
    default_message = "Session is already paused"
    http_status = 409


class RequestNotFound(MonetizationError):
    code = "request_not_found"
    default_message = "Service request not found"
    http_status = 404


class RequestNotPending(MonetizationError):
    code = "request_not_pending"
    default_message = "Request already processed"
    http_status = 409


class RequestExpired(MonetizationError):
    code = "request_expired"
    default_message = "Request has expired"
    http_status = 410


class HoldNotLocked(MonetizationError):
    code = "hold_not_locked"
    default_message = "Funds hold has already been resolved"
    http_status = 409


class DuplicateCharge(MonetizationError):
    """Raised inside a charge when the message was already billed."""

    code = "duplicate_charge"
    default_message = "Message already charged"
    http_status = 200
