"""
Typed error taxonomy for the settlement core.

Every error carries a machine-readable ``code`` and the HTTP status the
API layer maps it to. Callers catch by type, never by message text.

    OfframpError
    +-- UpstreamUnavailable            transient, retried inside the poll budget
    +-- ValidationRejected             permanent, surfaced to the caller
    |   +-- MalformedPayload           webhook body is not valid JSON
    +-- Unauthorized                   webhook signature failure
    +-- NotFound
    |   +-- OrderNotFound              no local Order for the id
    |   +-- UnknownProvider            no adapter registered under that name
    +-- PollTimeout                    polling budget exhausted
    +-- ConflictTerminalStateMismatch  vendor contradicts a committed terminal state
    +-- ReconcileContention            compare-and-set kept losing to other writers
"""

from fastapi import status


class OfframpError(Exception):
    """Base class for all settlement-core errors."""

    code: str = "offramp_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class UpstreamUnavailable(OfframpError):
    """The provider could not be reached, timed out, or answered 5xx/429."""

    code = "upstream_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ValidationRejected(OfframpError):
    """The request (or the provider's verdict on it) is permanently invalid."""

    code = "validation_rejected"
    status_code = 422


class MalformedPayload(ValidationRejected):
    code = "malformed_payload"
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(OfframpError):
    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFound(OfframpError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class OrderNotFound(NotFound):
    code = "order_not_found"


class UnknownProvider(NotFound):
    code = "unknown_provider"


class PollTimeout(OfframpError):
    code = "poll_timeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ConflictTerminalStateMismatch(OfframpError):
    """
    A vendor reported a terminal state different from the one already
    committed. Recorded for manual review, never auto-corrected.
    """

    code = "terminal_state_mismatch"
    status_code = status.HTTP_409_CONFLICT


class ReconcileContention(OfframpError):
    code = "reconcile_contention"
    status_code = status.HTTP_409_CONFLICT
