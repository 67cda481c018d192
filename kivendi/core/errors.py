"""Domain errors. Each carries the HTTP status and machine code it renders as."""
from __future__ import annotations


class KivendiError(Exception):
    status_code = 500
    code: str | None = "internal"
    default_message = "internal server error"

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class ValidationFailed(KivendiError):
    status_code = 400
    code = "validation"
    default_message = "invalid request"


class AuthRequired(KivendiError):
    status_code = 401
    code = "auth_required"
    default_message = "authentication required"


class Forbidden(KivendiError):
    status_code = 403
    code = "forbidden"
    default_message = "forbidden"


class NotFound(KivendiError):
    status_code = 404
    code = "not_found"
    default_message = "not found"


class Conflict(KivendiError):
    """Invariant conflict; ``code`` is the reason discriminator."""

    status_code = 409
    code = "conflict"
    default_message = "conflict"

    DUPLICATE_TRANSACTION = "duplicate_transaction"
    ALREADY_BOOSTED = "already_boosted"
    AD_NOT_VALIDATED = "ad_not_validated"
    ALREADY_SOLD = "already_sold"


class PaymentNotCompleted(KivendiError):
    status_code = 402
    code = "payment_not_completed"
    default_message = "payment not completed"


class PaymentVerificationFailed(KivendiError):
    status_code = 502
    code = "payment_verification_failed"
    default_message = "payment verification failed"


class UpstreamUnavailable(KivendiError):
    status_code = 504
    code = "upstream_unavailable"
    default_message = "upstream service unavailable"


class Internal(KivendiError):
    pass
