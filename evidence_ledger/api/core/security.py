"""
Identity context and request metadata.

The ledger does not authenticate anyone itself. An upstream auth service
issues a signed bearer token; this module only decodes it into the
tenant/actor context every ledger operation is parameterized by. The tenant
id is never taken from a request body.
"""
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request

from evidence_ledger.api.core.config import settings
from evidence_ledger.api.core.errors import ErrorCode, FieldError, LedgerError


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""
    tenant_id: str
    user_id: str
    email: Optional[str] = None


def _unauthorized(message: str) -> LedgerError:
    return LedgerError(
        ErrorCode.UNAUTHORIZED,
        message,
        headers={"WWW-Authenticate": "Bearer"}
    )


def get_identity(request: Request) -> Identity:
    """
    FastAPI dependency resolving the authenticated identity.

    Expects ``Authorization: Bearer <jwt>`` with claims ``tenant_id``,
    ``sub`` and optionally ``email``.

    Raises:
        LedgerError(UNAUTHORIZED): Missing, malformed or invalid token
    """
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Bearer token required")

    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM]
        )
    except jwt.PyJWTError as e:
        raise _unauthorized(f"Invalid token: {e}")

    tenant_id = claims.get("tenant_id")
    user_id = claims.get("sub")
    if not tenant_id or not user_id:
        raise _unauthorized("Token must carry tenant_id and sub claims")

    return Identity(tenant_id=str(tenant_id), user_id=str(user_id), email=claims.get("email"))


def get_correlation_id(request: Request) -> str:
    """Correlation id assigned by CorrelationIdMiddleware."""
    return getattr(request.state, "correlation_id", None) or "unassigned"


def require_idempotency_key(request: Request) -> str:
    """
    Mutating operations must carry an Idempotency-Key header.

    Raises:
        LedgerError(VALIDATION_FAILED): Header missing or blank
    """
    key = (request.headers.get("Idempotency-Key") or "").strip()
    if not key:
        raise LedgerError(
            ErrorCode.VALIDATION_FAILED,
            "Idempotency-Key header is required for mutating operations",
            field_errors=[FieldError("idempotency_key", "is required")]
        )
    if len(key) > 255:
        raise LedgerError(
            ErrorCode.VALIDATION_FAILED,
            "Idempotency-Key header is too long",
            field_errors=[FieldError("idempotency_key", "must be at most 255 characters")]
        )
    return key


def get_client_ip(request: Request) -> Optional[str]:
    """
    Get client IP address from request.

    Args:
        request: FastAPI request

    Returns:
        IP address string or None
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@dataclass(frozen=True)
class RequestContext:
    """Everything a ledger operation needs to know about its caller."""
    identity: Identity
    correlation_id: str
    idempotency_key: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def tenant_id(self) -> str:
        return self.identity.tenant_id


def get_request_context(
    request: Request,
    identity: Identity = Depends(get_identity)
) -> RequestContext:
    """Context for read operations (idempotency key optional)."""
    return RequestContext(
        identity=identity,
        correlation_id=get_correlation_id(request),
        idempotency_key=(request.headers.get("Idempotency-Key") or "").strip() or None,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent")
    )


def get_mutation_context(
    request: Request,
    identity: Identity = Depends(get_identity)
) -> RequestContext:
    """Context for mutating operations; the Idempotency-Key header is mandatory."""
    return RequestContext(
        identity=identity,
        correlation_id=get_correlation_id(request),
        idempotency_key=require_idempotency_key(request),
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent")
    )
