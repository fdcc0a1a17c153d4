"""
Error taxonomy for the dispute ledger.

Every error carries a stable code and the HTTP status the API layer
should answer with. A failed inclusion proof is not an error: verify()
returns False.
"""

from typing import Any, Dict, Optional, Tuple


class DisputeLedgerError(Exception):
    """Base exception for ledger errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "code": self.code,
            "error": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class InvalidInputError(DisputeLedgerError):
    """Request failed validation; nothing was persisted."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        self.field = field
        super().__init__(message, details)


class NotFoundError(DisputeLedgerError):
    """Unknown case, evidence or subject."""

    code = "NOT_FOUND"
    http_status = 404


class ConflictError(DisputeLedgerError):
    """Case is no longer pending, or a duplicate creation was attempted."""

    code = "CONFLICT"
    http_status = 409


class ForbiddenError(DisputeLedgerError):
    """Actor is not allowed to perform this operation."""

    code = "FORBIDDEN"
    http_status = 403


class ExternalDependencyFailure(DisputeLedgerError):
    """
    Anchoring or storage collaborator failed.

    retryable=True for timeouts and transient network/server errors,
    False for rejected or malformed payloads.
    """

    code = "EXTERNAL_DEPENDENCY_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        self.retryable = retryable
        details = dict(details or {})
        details.setdefault("retryable", retryable)
        super().__init__(message, details)


class AnchoringFailed(ExternalDependencyFailure):
    """
    Case was persisted but could not be anchored.

    The case stays pending with anchor_ref unset; anchoring is retried
    out-of-band.
    """

    def __init__(self, case, cause: ExternalDependencyFailure):
        self.case = case
        self.cause = cause
        super().__init__(
            f"Case {case.id} persisted but anchoring failed: {cause.message}",
            retryable=cause.retryable,
            details={"case_id": case.id}
        )


def error_response(exc: BaseException) -> Tuple[int, Dict[str, Any]]:
    """
    Map an exception to (http_status, body) for the API layer.

    Unknown exceptions become a generic 500 without leaking internals.
    """
    if isinstance(exc, DisputeLedgerError):
        return exc.http_status, exc.to_dict()

    return 500, {
        "success": False,
        "code": "INTERNAL_ERROR",
        "error": "Internal server error",
    }
