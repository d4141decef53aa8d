"""
Error taxonomy for cash collection and reconciliation.

Every failure that reaches a client carries a stable ``code`` (what went
wrong) and a ``kind`` (which class of failure, used to pick the HTTP status).
"""
from typing import Any, Dict, Optional
import enum


class ErrorKind(str, enum.Enum):
    validation_error = "validation_error"
    authorization_error = "authorization_error"
    not_found = "not_found"
    conflict = "conflict"
    rate_limited = "rate_limited"
    consistency_error = "consistency_error"
    external_dependency_error = "external_dependency_error"


HTTP_STATUS_BY_KIND = {
    ErrorKind.validation_error: 400,
    ErrorKind.authorization_error: 403,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.rate_limited: 429,
    ErrorKind.consistency_error: 500,
    ErrorKind.external_dependency_error: 502,
}


# code -> kind
ERROR_KINDS = {
    "agent_not_found": ErrorKind.not_found,
    "permission_denied": ErrorKind.authorization_error,
    "order_not_assigned": ErrorKind.authorization_error,
    "order_not_found": ErrorKind.not_found,
    "order_not_collectible": ErrorKind.validation_error,
    "invalid_order_reference": ErrorKind.validation_error,
    "invalid_amounts": ErrorKind.validation_error,
    "not_cod_payment": ErrorKind.validation_error,
    "already_collected": ErrorKind.conflict,
    "insufficient_payment": ErrorKind.validation_error,
    "excessive_overpayment": ErrorKind.validation_error,
    "rate_limited": ErrorKind.rate_limited,
    "aggregation_failed": ErrorKind.consistency_error,
    "order_update_failed": ErrorKind.external_dependency_error,
    "reconciliation_not_found": ErrorKind.not_found,
    "reconciliation_not_submitted": ErrorKind.conflict,
    "reconciliation_locked": ErrorKind.conflict,
    "concurrent_modification": ErrorKind.conflict,
    "invalid_decision": ErrorKind.validation_error,
    "invalid_date": ErrorKind.validation_error,
    "invalid_date_range": ErrorKind.validation_error,
    "transaction_not_found": ErrorKind.not_found,
    "invalid_transition": ErrorKind.conflict,
    "sweep_in_progress": ErrorKind.conflict,
    "invalid_payment_type": ErrorKind.validation_error,
}


class ServiceError(Exception):
    """Base for every classified failure raised by the services layer."""

    def __init__(
        self,
        code: str,
        message: str,
        kind: Optional[ErrorKind] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.kind = kind or ERROR_KINDS.get(code, ErrorKind.validation_error)
        self.details = details or {}
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "error_code": self.code,
            "error_kind": self.kind.value,
        }

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code!r}, kind={self.kind.value!r})"


class InputValidationError(ServiceError):
    """Raised by the validation guard for malformed client input."""


class CollectionError(ServiceError):
    """Raised when a COD collection attempt is refused or only partly recorded."""


class ReconciliationError(ServiceError):
    """Raised by submission, review and correction of a reconciliation."""
