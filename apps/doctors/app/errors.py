from __future__ import annotations

from typing import Any, Dict, Optional


class DomainError(Exception):
    """
    Base for every error the Doctors service raises on purpose.

    ``code`` is stable and machine readable; ``message`` is safe to show to
    the caller. The HTTP boundary maps ``status_code`` 1:1.
    """

    status_code = 400
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(DomainError):
    status_code = 400
    code = "VALIDATION_ERROR"


class Unauthorized(DomainError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(DomainError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(DomainError):
    status_code = 409
    code = "CONFLICT"


class InvalidTransition(Conflict):
    code = "INVALID_TRANSITION"


class RescheduleLimitReached(Conflict):
    code = "RESCHEDULE_LIMIT_REACHED"


class PaymentVerificationFailed(DomainError):
    status_code = 400
    code = "PAYMENT_VERIFICATION_FAILED"


class GatewayError(DomainError):
    status_code = 502
    code = "GATEWAY_ERROR"


class ConfigurationError(DomainError):
    status_code = 503
    code = "CONFIGURATION_ERROR"


SLOT_TAKEN = "SLOT_TAKEN"
ALREADY_PAID = "ALREADY_PAID"
SCHEDULE_EXISTS = "SCHEDULE_EXISTS"
STALE_APPOINTMENT = "STALE_APPOINTMENT"
IDEMPOTENCY_KEY_REUSED = "IDEMPOTENCY_KEY_REUSED"
