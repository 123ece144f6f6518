"""
Draft endpoints (pre-seal).

All mutating endpoints require an Idempotency-Key header and run through
run_idempotent(); the tenant always comes from the bearer token.
"""
from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from evidence_ledger.api.core.errors import FieldError, validation_failed
from evidence_ledger.api.core.security import RequestContext, get_mutation_context, get_request_context
from evidence_ledger.api.db.session import get_db
from evidence_ledger.api.schemas.evidence import (
    DraftCreate,
    DraftMetadataUpdate,
    DraftReject,
    PayloadAttach,
    evidence_body,
    ok_body,
)
from evidence_ledger.api.services.draft_service import (
    DEFAULT_FILE_CONTENT_TYPE,
    PAYLOAD_CONTENT_TYPE,
    DraftStore,
    reject_scope_changes,
)
from evidence_ledger.api.services.idempotency_service import IdempotencyGuard, run_idempotent
from evidence_ledger.api.services.seal_service import SealEngine
from evidence_ledger.api.utils.hashing import canonicalize, hash_bytes
from evidence_ledger.storage.blob_store import BlobStore, get_blob_store

router = APIRouter(prefix="/api/v1/evidence/drafts", tags=["drafts"])


@router.post("", status_code=201)
def create_draft(
    draft_data: DraftCreate,
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db)
):
    """
    Step 1: declare provenance, scope and purpose.

    Returns the new DRAFT with server-derived trust level and review status.
    """
    declaration = draft_data.model_dump(mode="json", exclude_none=True)
    fingerprint = IdempotencyGuard.fingerprint("createDraft", ctx.identity.user_id, declaration)

    def execute():
        record = DraftStore.create(db, ctx.tenant_id, declaration, ctx)
        return 201, evidence_body(ctx.correlation_id, record)

    return run_idempotent(db, ctx, "createDraft", fingerprint, execute).to_response()


@router.patch("/{evidence_id}")
def update_draft_metadata(
    evidence_id: str,
    update_data: DraftMetadataUpdate,
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db)
):
    """Change declaration fields before sealing. Scope can never change."""
    changes = update_data.model_dump(mode="json", exclude_unset=True)
    fingerprint = IdempotencyGuard.fingerprint(
        "updateDraftMetadata", ctx.identity.user_id, changes, target_id=evidence_id
    )

    def execute():
        record = DraftStore.update_metadata(db, ctx.tenant_id, evidence_id, changes, ctx)
        return 200, evidence_body(ctx.correlation_id, record)

    return run_idempotent(db, ctx, "updateDraftMetadata", fingerprint, execute).to_response()


@router.post("/{evidence_id}/payload")
def attach_payload(
    evidence_id: str,
    attach_data: PayloadAttach,
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store)
):
    """
    Step 2: attach the structured payload (a JSON object).

    The server stores it, hashes the stored bytes and moves the draft to
    READY_TO_SEAL.
    """
    reject_scope_changes(attach_data.model_extra or {})
    if attach_data.payload is None:
        raise validation_failed([FieldError("payload", "is required")])

    data = canonicalize(attach_data.payload)
    fingerprint = IdempotencyGuard.fingerprint(
        "attachPayload",
        ctx.identity.user_id,
        attach_data.payload,
        target_id=evidence_id,
        payload_size_bytes=len(data),
        payload_content_type=PAYLOAD_CONTENT_TYPE
    )

    def execute():
        record = DraftStore.attach_payload(db, blob_store, ctx.tenant_id, evidence_id, attach_data.payload, ctx)
        return 200, evidence_body(
            ctx.correlation_id,
            record,
            payload_hash_sha256=record.payload_hash_sha256,
            payload_size_bytes=record.payload_size_bytes
        )

    return run_idempotent(db, ctx, "attachPayload", fingerprint, execute).to_response()


@router.post("/{evidence_id}/file")
def attach_file(
    evidence_id: str,
    file: UploadFile = File(...),
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store)
):
    """
    Step 2 for file-based methods: attach the uploaded file bytes unchanged.

    MANUAL_ENTRY drafts reject files; they take a structured payload.
    """
    data = file.file.read()
    content_type = file.content_type or DEFAULT_FILE_CONTENT_TYPE
    fingerprint = IdempotencyGuard.fingerprint(
        "attachPayload",
        ctx.identity.user_id,
        {"filename": file.filename, "sha256": hash_bytes(data)},
        target_id=evidence_id,
        payload_size_bytes=len(data),
        payload_content_type=content_type
    )

    def execute():
        record = DraftStore.attach_file(
            db, blob_store, ctx.tenant_id, evidence_id, data, content_type, file.filename, ctx
        )
        return 200, evidence_body(
            ctx.correlation_id,
            record,
            payload_hash_sha256=record.payload_hash_sha256,
            payload_size_bytes=record.payload_size_bytes
        )

    return run_idempotent(db, ctx, "attachPayload", fingerprint, execute).to_response()


@router.post("/{evidence_id}/reject")
def reject_draft(
    evidence_id: str,
    reject_data: DraftReject,
    ctx: RequestContext = Depends(get_mutation_context),
    db: Session = Depends(get_db)
):
    """Withdraw a draft that should never be sealed."""
    body = reject_data.model_dump(mode="json", exclude_none=True)
    fingerprint = IdempotencyGuard.fingerprint("rejectDraft", ctx.identity.user_id, body, target_id=evidence_id)

    def execute():
        record = DraftStore.reject(db, ctx.tenant_id, evidence_id, reject_data.reason, ctx)
        return 200, evidence_body(ctx.correlation_id, record)

    return run_idempotent(db, ctx, "rejectDraft", fingerprint, execute).to_response()


@router.get("/{evidence_id}")
def get_draft_snapshot(
    evidence_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Current snapshot of a record in any state."""
    record = DraftStore.get_record(db, ctx.tenant_id, evidence_id)
    return evidence_body(ctx.correlation_id, record)


@router.get("/{evidence_id}/seal-preview")
def get_draft_for_seal(
    evidence_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Validation preview: what sealing would produce, or what blocks it."""
    return ok_body(ctx.correlation_id, preview=SealEngine.preview(db, ctx.tenant_id, evidence_id))
