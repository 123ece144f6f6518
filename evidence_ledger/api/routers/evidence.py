"""
Sealed evidence endpoints.

There is no DELETE and no PATCH here: sealed and quarantined evidence only
changes through quarantine resolution.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from evidence_ledger.api.core.security import RequestContext, get_mutation_context, get_request_context
from evidence_ledger.api.db.session import get_db
from evidence_ledger.api.schemas.evidence import (
    AuditEventResponse,
    EvidenceResponse,
    QuarantineResolve,
    evidence_body,
    ok_body,
)
from evidence_ledger.api.services.audit_service import AuditTrail
from evidence_ledger.api.services.draft_service import DraftStore
from evidence_ledger.api.services.idempotency_service import IdempotencyGuard, run_idempotent
from evidence_ledger.api.services.quarantine_service import QuarantineResolver
from evidence_ledger.api.services.seal_service import SealEngine
from evidence_ledger.storage.blob_store import BlobStore, get_blob_store

router = APIRouter(prefix="/api/v1/evidence", tags=["evidence"])


@router.get("")
def list_evidence(
    ledger_state: Optional[str] = None,
    dataset_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """List the caller's tenant's evidence. Other tenants' records never appear."""
    records = DraftStore.list(db, ctx.tenant_id, ledger_state, dataset_type, limit, offset)
    return ok_body(
        ctx.correlation_id,
        items=[EvidenceResponse.from_record(r) for r in records],
        count=len(records)
    )


@router.post("/{evidence_id}/seal")
def seal_evidence(
    evidence_id: str,
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db)
):
    """
    Step 3: seal. One-shot per evidence id.

    UNKNOWN scope ends in QUARANTINED instead of SEALED.
    """
    fingerprint = IdempotencyGuard.fingerprint("seal", ctx.identity.user_id, {}, target_id=evidence_id)

    def execute():
        record = SealEngine.seal(db, ctx.tenant_id, evidence_id, ctx)
        return 200, evidence_body(ctx.correlation_id, record)

    return run_idempotent(db, ctx, "seal", fingerprint, execute).to_response()


@router.post("/{evidence_id}/resolve-quarantine")
def resolve_quarantine(
    evidence_id: str,
    resolve_data: QuarantineResolve,
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db)
):
    """Bind quarantined evidence to a concrete scope (QUARANTINED -> SEALED, once)."""
    body = resolve_data.model_dump(mode="json", exclude_none=True)
    fingerprint = IdempotencyGuard.fingerprint(
        "resolveQuarantine", ctx.identity.user_id, body, target_id=evidence_id
    )

    def execute():
        record = QuarantineResolver.resolve_quarantine(
            db,
            ctx.tenant_id,
            evidence_id,
            resolve_data.declared_scope,
            resolve_data.scope_target_id,
            ctx,
            resolution_note=resolve_data.resolution_note
        )
        return 200, evidence_body(ctx.correlation_id, record)

    return run_idempotent(db, ctx, "resolveQuarantine", fingerprint, execute).to_response()


@router.get("/{evidence_id}")
def get_sealed_record(
    evidence_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Sealed or quarantined record; drafts are not visible here."""
    record = SealEngine.get_sealed_record(db, ctx.tenant_id, evidence_id)
    return evidence_body(ctx.correlation_id, record)


@router.get("/{evidence_id}/audit")
def get_audit_trail(
    evidence_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Ordered audit events. Unknown and foreign ids yield NOT_FOUND."""
    record = DraftStore.get_record(db, ctx.tenant_id, evidence_id)
    events = AuditTrail.replay(db, ctx.tenant_id, record.id)
    return ok_body(
        ctx.correlation_id,
        evidence_id=str(record.id),
        events=[AuditEventResponse.model_validate(e) for e in events]
    )


@router.get("/{evidence_id}/verify")
def verify_evidence(
    evidence_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store)
):
    """Recompute both hashes and compare them with the record and its seal event."""
    return ok_body(
        ctx.correlation_id,
        verification=SealEngine.verify(db, blob_store, ctx.tenant_id, evidence_id)
    )
