"""
Evidence Ledger API (FastAPI).

Turns declared, payload-bearing evidence into immutable, hash-verified
records. Drafts are mutable until sealed; sealed and quarantined records
are never modified again, except the one-time quarantine resolution.

V1 Endpoints:
- POST   /api/v1/evidence/drafts
- PATCH  /api/v1/evidence/drafts/{evidence_id}
- POST   /api/v1/evidence/drafts/{evidence_id}/payload
- POST   /api/v1/evidence/drafts/{evidence_id}/reject
- GET    /api/v1/evidence/drafts/{evidence_id}
- GET    /api/v1/evidence/drafts/{evidence_id}/seal-preview
- POST   /api/v1/evidence/{evidence_id}/seal
- POST   /api/v1/evidence/{evidence_id}/resolve-quarantine
- GET    /api/v1/evidence/{evidence_id}
- GET    /api/v1/evidence/{evidence_id}/audit
- GET    /api/v1/evidence/{evidence_id}/verify
- GET    /api/v1/evidence
- GET    /health
- GET    /metrics

Every response carries a correlation id (body and X-Correlation-ID header).

Local dev: python -m uvicorn evidence_ledger.api.main:app --reload
"""
import uuid
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from evidence_ledger.api.core.errors import ErrorCode, FieldError, LedgerError
from evidence_ledger.api.core.logging import logger
from evidence_ledger.api.core.security import get_correlation_id
from evidence_ledger.api.routers import drafts, evidence
from evidence_ledger.observability.prometheus import CONTENT_TYPE_LATEST, generate_latest

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a correlation id to every request and response.

    Taken from the incoming X-Correlation-ID header when present, generated
    otherwise, and stored on ``request.state.correlation_id``.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (request.headers.get(CORRELATION_HEADER) or "").strip()[:100] or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


# Create FastAPI app
app = FastAPI(
    title="Evidence Ledger",
    description="Evidence ingestion and sealing ledger - idempotent, tenant-scoped, append-only",
    version="1.0.0"
)

app.add_middleware(CorrelationIdMiddleware)

# Drafts before evidence (more specific prefix)
app.include_router(drafts.router)
app.include_router(evidence.router)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(get_correlation_id(request)),
        headers=exc.headers
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are caller errors, reported like any other validation failure."""
    field_errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field_errors.append(FieldError(".".join(loc) or "body", error.get("msg", "is invalid")))
    error = LedgerError(ErrorCode.VALIDATION_FAILED, "Request validation failed", field_errors=field_errors)
    return JSONResponse(status_code=error.status_code, content=error.to_body(get_correlation_id(request)))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    correlation_id = get_correlation_id(request)
    logger.error(f"Unhandled error on {request.method} {request.url.path} correlation_id={correlation_id}: {exc}",
                 exc_info=True)
    error = LedgerError(ErrorCode.SYSTEM_ERROR, "Internal error; contact support with the correlation id")
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_body(correlation_id),
        headers={CORRELATION_HEADER: correlation_id}
    )


@app.get("/health")
def health_check(request: Request):
    """Health check endpoint."""
    return {"status": "healthy", "service": "evidence-ledger", "correlation_id": get_correlation_id(request)}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def startup():
    """Startup event."""
    logger.info("Evidence Ledger starting...")


@app.on_event("shutdown")
async def shutdown():
    """Shutdown event."""
    logger.info("Evidence Ledger shutting down...")
