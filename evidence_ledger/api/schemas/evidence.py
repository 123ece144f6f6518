"""
Evidence ledger schemas (Pydantic).

Request models keep declaration fields optional and untyped on purpose:
required-ness and field types are decided by the declaration validator so
every missing or mistyped field is reported in one response. Server-derived
fields (trust level, review status, hashes, tenant) are not part of any
request model and are dropped if sent.
"""
from pydantic import BaseModel
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import uuid

from fastapi.encoders import jsonable_encoder

from evidence_ledger.api.models.evidence_record import DeclaredScope, EvidenceRecord, LedgerState
from evidence_ledger.api.services.declaration import retention_display


class DraftCreate(BaseModel):
    ingestion_method: Any = None
    dataset_type: Any = None
    source_system: Any = None

    declared_scope: Any = None
    scope_target_id: Any = None
    scope_target_name: Any = None
    quarantine_reason: Any = None
    resolution_deadline: Any = None  # YYYY-MM-DD

    primary_intent: Any = None
    purpose_tags: Any = None
    contains_personal_data: Any = None
    gdpr_legal_basis: Any = None
    entry_notes: Any = None

    retention_policy: Any = None
    retention_custom_days: Any = None

    external_reference_id: Any = None
    snapshot_datetime_utc: Any = None
    export_job_id: Any = None
    connector_reference: Any = None
    supplier_portal_request_id: Any = None


class DraftMetadataUpdate(DraftCreate):
    """
    Partial update. Only fields present in the request body are applied.

    Scope and provenance fields are accepted by the schema only so the
    service can reject them explicitly.
    """


class PayloadAttach(BaseModel):
    payload: Any = None

    class Config:
        extra = "allow"


class QuarantineResolve(BaseModel):
    declared_scope: Optional[str] = None
    scope_target_id: Optional[str] = None
    resolution_note: Optional[str] = None


class DraftReject(BaseModel):
    reason: Optional[str] = None


class BindingContext(BaseModel):
    ingestion_method: str
    dataset_type: str
    source_system: str
    declared_scope: str
    scope_target_id: Optional[str] = None
    link_status: str  # QUARANTINED for UNKNOWN scope, LINKED otherwise
    trust_level: str
    review_status: str


class EvidenceResponse(BaseModel):
    evidence_id: uuid.UUID
    tenant_id: str
    ledger_state: str
    version: int

    ingestion_method: str
    dataset_type: str
    source_system: str

    declared_scope: str
    scope_target_id: Optional[str] = None
    scope_target_name: Optional[str] = None
    quarantine_reason: Optional[str] = None
    resolution_deadline: Optional[date] = None
    quarantine_past_due: bool

    primary_intent: str
    purpose_tags: List[str]
    contains_personal_data: bool
    gdpr_legal_basis: Optional[str] = None
    entry_notes: Optional[str] = None
    external_reference_id: Optional[str] = None
    snapshot_datetime_utc: Optional[str] = None
    export_job_id: Optional[str] = None
    connector_reference: Optional[str] = None
    supplier_portal_request_id: Optional[str] = None

    trust_level: str
    review_status: str

    payload_uri: Optional[str] = None
    payload_size_bytes: Optional[int] = None
    payload_content_type: Optional[str] = None
    payload_hash_sha256: Optional[str] = None
    metadata_hash_sha256: Optional[str] = None

    retention_policy: str
    retention_custom_days: Optional[int] = None
    retention_ends_at: Optional[datetime] = None
    retention_display: str

    sealed_at: Optional[datetime] = None
    attestor_user_id: Optional[str] = None
    attestor_email: Optional[str] = None
    attestation_method: Optional[str] = None

    resolved_at: Optional[datetime] = None
    resolved_by_user_id: Optional[str] = None
    resolved_scope: Optional[str] = None
    resolved_scope_target_id: Optional[str] = None

    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    created_by_user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    binding_context: BindingContext

    @classmethod
    def from_record(cls, record: EvidenceRecord) -> "EvidenceResponse":
        values = {
            name: getattr(record, name)
            for name in cls.model_fields
            if name not in ("evidence_id", "ledger_state", "retention_display", "binding_context")
        }
        values["purpose_tags"] = list(record.purpose_tags or [])
        return cls(
            evidence_id=record.id,
            ledger_state=LedgerState(record.ledger_state).value,
            retention_display=retention_display(record),
            binding_context=BindingContext(
                ingestion_method=record.ingestion_method,
                dataset_type=record.dataset_type,
                source_system=record.source_system,
                declared_scope=record.declared_scope,
                scope_target_id=record.resolved_scope_target_id or record.scope_target_id,
                link_status="QUARANTINED" if (
                    record.declared_scope == DeclaredScope.UNKNOWN.value and record.resolved_at is None
                ) else "LINKED",
                trust_level=record.trust_level,
                review_status=record.review_status,
            ),
            **values
        )


class AuditEventResponse(BaseModel):
    id: uuid.UUID
    evidence_id: uuid.UUID
    sequence: int
    event_type: str
    from_state: Optional[str] = None
    to_state: str
    actor_user_id: str
    actor_email: Optional[str] = None
    payload_hash_sha256: Optional[str] = None
    metadata_hash_sha256: Optional[str] = None
    correlation_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    details: Dict[str, Any]
    occurred_at: datetime

    class Config:
        from_attributes = True


def ok_body(correlation_id: str, **data: Any) -> Dict[str, Any]:
    """Success envelope, JSON-ready so it can be stored for idempotent replay."""
    body: Dict[str, Any] = {"ok": True, "correlation_id": correlation_id}
    body.update(data)
    return jsonable_encoder(body)


def evidence_body(correlation_id: str, record: EvidenceRecord, **extra: Any) -> Dict[str, Any]:
    return ok_body(correlation_id, evidence=EvidenceResponse.from_record(record), **extra)
