"""Domain exceptions for the escrow lifecycle.

EscrowError
├── ValidationError       — bad caller input, nothing changed (422)
├── NotFoundError         — unknown transaction (404)
├── StateConflictError    — escrow not in the required state (409)
├── RevisionLimitReached  — folded into a release, never surfaced
├── PaymentCaptureError   — capture failed, nothing persisted (502)
├── PayoutGatewayError    — payout/refund call failed, retried by the executor
└── RaceLost              — conditional write matched no row
"""

from typing import Any

MAX_REVISIONS_EXCEEDED = "MAX_REVISIONS_EXCEEDED"


class EscrowError(Exception):
    status_code = 400
    default_error_code = "ESCROW_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}


class ValidationError(EscrowError):
    status_code = 422
    default_error_code = "VALIDATION_ERROR"


class NotFoundError(EscrowError):
    status_code = 404
    default_error_code = "NOT_FOUND"


class StateConflictError(EscrowError):
    """Operation attempted against an escrow not in the required state.

    Callers should refresh the escrow and retry.
    """

    status_code = 409
    default_error_code = "STATE_CONFLICT"


class RevisionLimitReached(EscrowError):
    default_error_code = MAX_REVISIONS_EXCEEDED


class PaymentCaptureError(EscrowError):
    status_code = 502
    default_error_code = "PAYMENT_CAPTURE_FAILED"


class PayoutGatewayError(EscrowError):
    status_code = 502
    default_error_code = "PAYOUT_GATEWAY_ERROR"


class RaceLost(EscrowError):
    """Another actor transitioned the escrow first."""

    status_code = 409
    default_error_code = "RACE_LOST"
