"""
Draft store - mutable pre-seal evidence records.

Every function takes tenant_id explicitly and puts it in every query
predicate. A record owned by another tenant is indistinguishable from a
missing one. Nothing here commits; run_idempotent() owns the transaction.
"""
from datetime import datetime, timezone, date
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy.orm import Session

from evidence_ledger.api.core.config import settings
from evidence_ledger.api.core.errors import ErrorCode, FieldError, LedgerError, not_found, validation_failed
from evidence_ledger.api.core.logging import logger
from evidence_ledger.api.core.security import RequestContext
from evidence_ledger.api.models.evidence_record import (
    DatasetType,
    EvidenceRecord,
    IngestionMethod,
    LedgerState,
)
from evidence_ledger.api.services.audit_service import AuditEventType, AuditTrail
from evidence_ledger.api.services.declaration import (
    PROVENANCE_FIELDS,
    SCOPE_FIELDS,
    ValidationFailed,
    declaration_from_record,
    derive_review_status,
    derive_trust_level,
    find_placeholder_values,
    validate_declaration,
)
from evidence_ledger.api.services.status_fsm import compare_and_swap, require_state
from evidence_ledger.api.utils.hashing import canonicalize, hash_bytes
from evidence_ledger.storage.blob_store import BlobStore, BlobStoreError

PAYLOAD_CONTENT_TYPE = "application/json"
DEFAULT_FILE_CONTENT_TYPE = "application/octet-stream"
MAX_CONTENT_TYPE_LENGTH = 100
MIN_REJECTION_REASON_LENGTH = 10


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _parse_evidence_id(evidence_id: Any) -> Optional[uuid.UUID]:
    if isinstance(evidence_id, uuid.UUID):
        return evidence_id
    try:
        return uuid.UUID(str(evidence_id))
    except ValueError:
        return None


def reject_scope_changes(changes: Dict[str, Any]) -> None:
    attempted = [key for key in SCOPE_FIELDS if key in changes]
    if attempted:
        raise LedgerError(
            ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION,
            "Scope is fixed at declaration and cannot be changed",
            field_errors=[FieldError(key, "is immutable after declaration") for key in attempted]
        )


class DraftStore:
    """
    Tenant-scoped CRUD for pre-seal evidence.

    There is no delete. Drafts leave the mutable states only by sealing
    (SealEngine) or by rejection.
    """

    @staticmethod
    def get_record(db: Session, tenant_id: str, evidence_id: Any) -> EvidenceRecord:
        """
        Load a record in any state.

        Raises:
            LedgerError(NOT_FOUND): Unknown id, malformed id, or another tenant's record
        """
        parsed = _parse_evidence_id(evidence_id)
        if parsed is None:
            raise not_found()
        record = (
            db.query(EvidenceRecord)
            .filter(EvidenceRecord.tenant_id == tenant_id, EvidenceRecord.id == parsed)
            .first()
        )
        if record is None:
            raise not_found()
        return record

    @staticmethod
    def create(
        db: Session,
        tenant_id: str,
        declaration: Dict[str, Any],
        ctx: RequestContext
    ) -> EvidenceRecord:
        """
        Create a DRAFT from a declaration.

        Trust level and review status are derived from the ingestion method;
        any caller-supplied values never reach this function.

        Raises:
            LedgerError: VALIDATION_FAILED (batched), UNSUPPORTED_METHOD_DATASET_COMBINATION,
                DATASET_SCOPE_INCOMPATIBLE
        """
        result = validate_declaration(declaration, _today())
        if isinstance(result, ValidationFailed):
            logger.info(
                f"Declaration rejected tenant={tenant_id} code={result.error_code} "
                f"fields={[fe.field for fe in result.field_errors]} correlation_id={ctx.correlation_id}"
            )
            raise result.to_error()

        record = EvidenceRecord(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            ledger_state=LedgerState.DRAFT,
            version=1,
            trust_level=derive_trust_level(result.ingestion_method).value,
            review_status=derive_review_status(result.ingestion_method).value,
            quarantine_past_due=False,
            created_by_user_id=ctx.identity.user_id,
            **result.column_values()
        )
        db.add(record)
        db.flush()

        AuditTrail.record(
            db, ctx,
            evidence_id=record.id,
            sequence=record.version,
            event_type=AuditEventType.DRAFT_CREATED,
            from_state=None,
            to_state=LedgerState.DRAFT.value,
            details={
                "ingestion_method": record.ingestion_method,
                "dataset_type": record.dataset_type,
                "source_system": record.source_system,
                "declared_scope": record.declared_scope,
                "scope_target_id": record.scope_target_id,
                "contains_personal_data": record.contains_personal_data,
                "gdpr_legal_basis": record.gdpr_legal_basis,
                "trust_level": record.trust_level,
                "review_status": record.review_status,
            }
        )

        logger.info(
            f"Draft {record.id} created tenant={tenant_id} method={record.ingestion_method} "
            f"dataset={record.dataset_type} scope={record.declared_scope} correlation_id={ctx.correlation_id}"
        )
        return record

    @staticmethod
    def update_metadata(
        db: Session,
        tenant_id: str,
        evidence_id: Any,
        changes: Dict[str, Any],
        ctx: RequestContext
    ) -> EvidenceRecord:
        """
        Change declaration fields of a DRAFT or READY_TO_SEAL record.

        Scope fields are rejected in every state, before the state is even
        looked at. Provenance fields are rejected as validation errors. The
        merged declaration is re-validated as a whole.

        Raises:
            LedgerError: NOT_FOUND, SCOPE_IMMUTABLE_AFTER_DECLARATION, VALIDATION_FAILED,
                IMMUTABILITY_CONFLICT, INVALID_TRANSITION
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        reject_scope_changes(changes)

        provenance = [key for key in PROVENANCE_FIELDS if key in changes]
        if provenance:
            raise validation_failed(
                [FieldError(key, "is fixed at declaration") for key in provenance],
                "Provenance cannot be changed after declaration"
            )
        if not changes:
            raise validation_failed([FieldError("body", "no updatable fields supplied")])

        require_state(record, "updateDraftMetadata")

        merged = declaration_from_record(record)
        merged.update(changes)
        result = validate_declaration(merged, _today(), check_deadline_window=False)
        if isinstance(result, ValidationFailed):
            raise result.to_error()

        values = {
            key: value for key, value in result.column_values().items()
            if key not in SCOPE_FIELDS and key not in PROVENANCE_FIELDS
        }
        from_state = record.ledger_state.value
        compare_and_swap(db, tenant_id, record, [LedgerState.DRAFT, LedgerState.READY_TO_SEAL], values)

        AuditTrail.record(
            db, ctx,
            evidence_id=record.id,
            sequence=record.version,
            event_type=AuditEventType.METADATA_UPDATED,
            from_state=from_state,
            to_state=record.ledger_state.value,
            details={"changed_fields": sorted(changes.keys())}
        )

        logger.info(
            f"Draft {record.id} metadata updated fields={sorted(changes.keys())} "
            f"correlation_id={ctx.correlation_id}"
        )
        return record

    @staticmethod
    def attach_payload(
        db: Session,
        blob_store: BlobStore,
        tenant_id: str,
        evidence_id: Any,
        payload: Any,
        ctx: RequestContext
    ) -> EvidenceRecord:
        """
        Store a structured payload and move the draft to READY_TO_SEAL.

        The payload is canonicalized, written to the blob store under a key
        unique to this attempt, read back, and the hash is computed over the
        bytes that were read back.

        Raises:
            LedgerError: NOT_FOUND, INVALID_PAYLOAD, IMMUTABILITY_CONFLICT,
                INVALID_TRANSITION, SYSTEM_ERROR (blob store failure)
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        require_state(record, "attachPayload")

        data = canonicalize(payload)
        if not payload:
            raise LedgerError(ErrorCode.INVALID_PAYLOAD, "Payload must not be an empty object")
        _check_payload_size(len(data))
        if record.ingestion_method == IngestionMethod.MANUAL_ENTRY.value:
            placeholders = find_placeholder_values(payload)
            if placeholders:
                raise LedgerError(
                    ErrorCode.INVALID_PAYLOAD,
                    "Manual entry contains placeholder values",
                    field_errors=[FieldError(path, "placeholder value is not evidence") for path in placeholders]
                )

        return _store_payload(db, blob_store, tenant_id, record, data, PAYLOAD_CONTENT_TYPE, ".json", ctx)

    @staticmethod
    def attach_file(
        db: Session,
        blob_store: BlobStore,
        tenant_id: str,
        evidence_id: Any,
        data: bytes,
        content_type: Optional[str],
        filename: Optional[str],
        ctx: RequestContext
    ) -> EvidenceRecord:
        """
        Store an uploaded file as-is and move the draft to READY_TO_SEAL.

        Only file-based methods take files; MANUAL_ENTRY evidence is always
        a structured payload. The bytes are hashed exactly as read back from
        the blob store.

        Raises:
            LedgerError: NOT_FOUND, INVALID_PAYLOAD, IMMUTABILITY_CONFLICT,
                INVALID_TRANSITION, SYSTEM_ERROR (blob store failure)
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        require_state(record, "attachPayload")

        if record.ingestion_method == IngestionMethod.MANUAL_ENTRY.value:
            raise LedgerError(
                ErrorCode.INVALID_PAYLOAD,
                "MANUAL_ENTRY evidence takes a structured payload, not a file",
                field_errors=[FieldError("file", "is not accepted for MANUAL_ENTRY")]
            )
        if not data:
            raise LedgerError(
                ErrorCode.INVALID_PAYLOAD,
                "Uploaded file is empty",
                field_errors=[FieldError("file", "must not be empty")]
            )
        _check_payload_size(len(data))
        content_type = (content_type or DEFAULT_FILE_CONTENT_TYPE).strip()
        if len(content_type) > MAX_CONTENT_TYPE_LENGTH:
            raise LedgerError(
                ErrorCode.INVALID_PAYLOAD,
                f"Content type is longer than {MAX_CONTENT_TYPE_LENGTH} characters",
                field_errors=[FieldError("file", "content type is too long")]
            )

        return _store_payload(
            db, blob_store, tenant_id, record, data, content_type, "", ctx,
            details={"original_filename": filename}
        )

    @staticmethod
    def reject(
        db: Session,
        tenant_id: str,
        evidence_id: Any,
        reason: Optional[str],
        ctx: RequestContext
    ) -> EvidenceRecord:
        """
        Withdraw a DRAFT or READY_TO_SEAL record (terminal REJECTED state).

        Raises:
            LedgerError: NOT_FOUND, VALIDATION_FAILED, IMMUTABILITY_CONFLICT, INVALID_TRANSITION
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        reason = (reason or "").strip()
        if len(reason) < MIN_REJECTION_REASON_LENGTH:
            raise validation_failed([
                FieldError("reason", f"must be at least {MIN_REJECTION_REASON_LENGTH} characters")
            ])
        require_state(record, "rejectDraft")

        from_state = record.ledger_state.value
        compare_and_swap(db, tenant_id, record, [LedgerState.DRAFT, LedgerState.READY_TO_SEAL], {
            "ledger_state": LedgerState.REJECTED,
            "rejected_at": datetime.now(timezone.utc),
            "rejection_reason": reason,
        })

        AuditTrail.record(
            db, ctx,
            evidence_id=record.id,
            sequence=record.version,
            event_type=AuditEventType.DRAFT_REJECTED,
            from_state=from_state,
            to_state=LedgerState.REJECTED.value,
            payload_hash_sha256=record.payload_hash_sha256,
            details={"reason": reason}
        )

        logger.info(f"Draft {record.id} rejected correlation_id={ctx.correlation_id}")
        return record

    @staticmethod
    def list(
        db: Session,
        tenant_id: str,
        ledger_state: Optional[str] = None,
        dataset_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[EvidenceRecord]:
        """
        List a tenant's evidence, newest first.

        Raises:
            LedgerError(VALIDATION_FAILED): Unknown filter values
        """
        errors = []
        if ledger_state is not None and ledger_state not in {s.value for s in LedgerState}:
            errors.append(FieldError("ledger_state", f"must be one of: {', '.join(s.value for s in LedgerState)}"))
        if dataset_type is not None and dataset_type not in {d.value for d in DatasetType}:
            errors.append(FieldError("dataset_type", f"must be one of: {', '.join(d.value for d in DatasetType)}"))
        if errors:
            raise validation_failed(errors)

        query = db.query(EvidenceRecord).filter(EvidenceRecord.tenant_id == tenant_id)
        if ledger_state is not None:
            query = query.filter(EvidenceRecord.ledger_state == LedgerState(ledger_state))
        if dataset_type is not None:
            query = query.filter(EvidenceRecord.dataset_type == dataset_type)

        return (
            query.order_by(EvidenceRecord.created_at.desc(), EvidenceRecord.id)
            .offset(offset)
            .limit(limit)
            .all()
        )


def _check_payload_size(size: int) -> None:
    if size > settings.MAX_PAYLOAD_BYTES:
        raise LedgerError(
            ErrorCode.INVALID_PAYLOAD,
            f"Payload is {size} bytes; the limit is {settings.MAX_PAYLOAD_BYTES}",
            extra={"max_payload_bytes": settings.MAX_PAYLOAD_BYTES}
        )


def _store_payload(
    db: Session,
    blob_store: BlobStore,
    tenant_id: str,
    record: EvidenceRecord,
    data: bytes,
    content_type: str,
    suffix: str,
    ctx: RequestContext,
    details: Optional[Dict[str, Any]] = None
) -> EvidenceRecord:
    # One object per attempt; a stored payload is never overwritten
    object_name = f"{tenant_id}/{record.id}/{uuid.uuid4()}{suffix}"
    try:
        uri = blob_store.put_bytes(object_name, data, content_type)
        stored = blob_store.get_bytes(uri)
    except BlobStoreError as e:
        logger.error(
            f"Blob store failure for evidence {record.id} correlation_id={ctx.correlation_id}: {e}",
            exc_info=True
        )
        raise LedgerError(ErrorCode.SYSTEM_ERROR, "Payload storage failed; contact support with the correlation id")

    payload_hash = hash_bytes(stored)
    compare_and_swap(db, tenant_id, record, [LedgerState.DRAFT], {
        "ledger_state": LedgerState.READY_TO_SEAL,
        "payload_uri": uri,
        "payload_size_bytes": len(stored),
        "payload_content_type": content_type,
        "payload_hash_sha256": payload_hash,
    })

    AuditTrail.record(
        db, ctx,
        evidence_id=record.id,
        sequence=record.version,
        event_type=AuditEventType.PAYLOAD_ATTACHED,
        from_state=LedgerState.DRAFT.value,
        to_state=LedgerState.READY_TO_SEAL.value,
        payload_hash_sha256=payload_hash,
        details={
            "payload_uri": uri,
            "payload_size_bytes": len(stored),
            "payload_content_type": content_type,
            **(details or {})
        }
    )

    logger.info(
        f"Payload attached to {record.id} sha256={payload_hash} size={len(stored)} "
        f"content_type={content_type} correlation_id={ctx.correlation_id}"
    )
    return record
