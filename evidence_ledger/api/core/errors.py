"""
Ledger error taxonomy.

Every rejected operation surfaces one of these codes to the caller together
with enough detail (field errors, allowed values) to retry correctly.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from fastapi import HTTPException


class ErrorCode:
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNSUPPORTED_METHOD_DATASET_COMBINATION = "UNSUPPORTED_METHOD_DATASET_COMBINATION"
    DATASET_SCOPE_INCOMPATIBLE = "DATASET_SCOPE_INCOMPATIBLE"
    SCOPE_IMMUTABLE_AFTER_DECLARATION = "SCOPE_IMMUTABLE_AFTER_DECLARATION"
    MISSING_PAYLOAD = "MISSING_PAYLOAD"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    NOT_FOUND = "NOT_FOUND"
    IMMUTABILITY_CONFLICT = "IMMUTABILITY_CONFLICT"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    RETRY_IN_PROGRESS = "RETRY_IN_PROGRESS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNAUTHORIZED = "UNAUTHORIZED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


STATUS_BY_CODE: Dict[str, int] = {
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.UNSUPPORTED_METHOD_DATASET_COMBINATION: 422,
    ErrorCode.DATASET_SCOPE_INCOMPATIBLE: 422,
    ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION: 422,
    ErrorCode.MISSING_PAYLOAD: 422,
    ErrorCode.INVALID_PAYLOAD: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.IMMUTABILITY_CONFLICT: 409,
    ErrorCode.IDEMPOTENCY_CONFLICT: 409,
    ErrorCode.RETRY_IN_PROGRESS: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.SYSTEM_ERROR: 500,
}


@dataclass(frozen=True)
class FieldError:
    """A single invalid or missing field."""
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class LedgerError(HTTPException):
    """
    HTTPException carrying a ledger error code.

    Args:
        error_code: One of ErrorCode
        message: Human readable explanation
        field_errors: Batched field-level problems (validation errors)
        extra: Additional context (allowed values, current state, ...)
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        field_errors: Optional[List[FieldError]] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.field_errors = list(field_errors or [])
        self.extra = dict(extra or {})
        super().__init__(
            status_code=STATUS_BY_CODE.get(error_code, 500),
            detail=message,
            headers=headers
        )

    def to_body(self, correlation_id: Optional[str]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "ok": False,
            "error_code": self.error_code,
            "message": self.message,
            "field_errors": [fe.to_dict() for fe in self.field_errors],
            "correlation_id": correlation_id,
        }
        body.update(self.extra)
        return body


def validation_failed(field_errors: List[FieldError], message: str = "Validation failed") -> LedgerError:
    return LedgerError(ErrorCode.VALIDATION_FAILED, message, field_errors=field_errors)


def not_found(what: str = "Evidence") -> LedgerError:
    # Identical for "missing" and "owned by another tenant".
    return LedgerError(ErrorCode.NOT_FOUND, f"{what} not found")
