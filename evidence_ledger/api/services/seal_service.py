"""
Seal transition engine.

The only code path that produces SEALED or QUARANTINED records. Sealing is
one-shot per evidence id: the conditional UPDATE on ledger_state is the
authoritative guard, idempotency keys only make retries cheap.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from evidence_ledger.api.core.errors import ErrorCode, LedgerError, not_found
from evidence_ledger.api.core.logging import logger
from evidence_ledger.api.core.security import RequestContext
from evidence_ledger.api.models.evidence_record import EvidenceRecord, LedgerState
from evidence_ledger.api.services.audit_service import AuditEventType, AuditTrail
from evidence_ledger.api.services.declaration import compute_retention_ends_at
from evidence_ledger.api.services.draft_service import DraftStore
from evidence_ledger.api.services.quarantine_service import QuarantineResolver
from evidence_ledger.api.services.status_fsm import LedgerTransitions, compare_and_swap, require_state
from evidence_ledger.api.utils.hashing import canonicalize, hash_bytes, verify_hash
from evidence_ledger.observability.metrics import observe_seal_duration, record_seal_outcome
from evidence_ledger.storage.blob_store import BlobStore, BlobStoreError

ATTESTATION_METHOD = "AUTHENTICATED_SESSION"


def build_seal_metadata(record: EvidenceRecord) -> Dict[str, Any]:
    """
    Metadata covered by metadata_hash_sha256.

    Only declaration-time facts and the payload digest go in; seal stamps
    (sealed_at, attestor) stay outside so the hash describes the evidence,
    not the moment it was sealed.
    """
    deadline = record.resolution_deadline
    return {
        "evidence_id": str(record.id),
        "tenant_id": record.tenant_id,
        "provenance": {
            "ingestion_method": record.ingestion_method,
            "dataset_type": record.dataset_type,
            "source_system": record.source_system,
        },
        "scope": {
            "declared_scope": record.declared_scope,
            "scope_target_id": record.scope_target_id,
            "scope_target_name": record.scope_target_name,
            "quarantine_reason": record.quarantine_reason,
            "resolution_deadline": deadline.isoformat() if deadline else None,
        },
        "declaration": {
            "primary_intent": record.primary_intent,
            "purpose_tags": list(record.purpose_tags or []),
            "contains_personal_data": record.contains_personal_data,
            "gdpr_legal_basis": record.gdpr_legal_basis,
            "entry_notes": record.entry_notes,
            "external_reference_id": record.external_reference_id,
            "snapshot_datetime_utc": record.snapshot_datetime_utc,
            "export_job_id": record.export_job_id,
            "connector_reference": record.connector_reference,
            "supplier_portal_request_id": record.supplier_portal_request_id,
            "retention_policy": record.retention_policy,
            "retention_custom_days": record.retention_custom_days,
        },
        "payload": {
            "payload_hash_sha256": record.payload_hash_sha256,
            "payload_size_bytes": record.payload_size_bytes,
            "payload_content_type": record.payload_content_type,
        },
        "trust_level": record.trust_level,
        "review_status": record.review_status,
    }


class SealEngine:

    @staticmethod
    def preview(db: Session, tenant_id: str, evidence_id: Any) -> Dict[str, Any]:
        """
        What seal() would do right now, without doing it.

        Returns:
            dict with ``ready``, ``blocking_issues`` (error codes seal would
            raise), ``expected_state``, the metadata and its hash, and the
            retention end if sealed now.
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        state = LedgerState(record.ledger_state)
        now = datetime.now(timezone.utc)

        blocking: List[str] = []
        expected_state: Optional[str] = None
        past_due = False
        if state in LedgerTransitions.IMMUTABLE:
            blocking.append(ErrorCode.IMMUTABILITY_CONFLICT)
        elif state == LedgerState.REJECTED:
            blocking.append(ErrorCode.INVALID_TRANSITION)
        elif state == LedgerState.DRAFT or not record.payload_hash_sha256:
            blocking.append(ErrorCode.MISSING_PAYLOAD)

        if state not in LedgerTransitions.IMMUTABLE and state != LedgerState.REJECTED:
            try:
                resolution = QuarantineResolver.resolve_at_seal(record, now.date())
                expected_state = resolution.target_state.value
                past_due = resolution.past_due
            except LedgerError as e:
                blocking.append(e.error_code)

        metadata = build_seal_metadata(record)
        return {
            "evidence_id": str(record.id),
            "ledger_state": state.value,
            "ready": not blocking,
            "blocking_issues": blocking,
            "expected_state": expected_state,
            "quarantine_past_due": past_due,
            "payload_hash_sha256": record.payload_hash_sha256,
            "metadata": metadata,
            "metadata_hash_sha256": hash_bytes(canonicalize(metadata)),
            "retention_ends_at_if_sealed_now": (
                compute_retention_ends_at(record.retention_policy, record.retention_custom_days, now).isoformat()
                if not blocking else None
            ),
        }

    @staticmethod
    def seal(db: Session, tenant_id: str, evidence_id: Any, ctx: RequestContext) -> EvidenceRecord:
        """
        Seal a READY_TO_SEAL record (or quarantine it when its scope is UNKNOWN).

        Steps: load, require payload, compute the metadata hash over the
        final canonical metadata, resolve scope, stamp seal time/attestor/
        retention, then one conditional UPDATE plus the audit event in the
        caller's transaction.

        Raises:
            LedgerError: NOT_FOUND, IMMUTABILITY_CONFLICT, MISSING_PAYLOAD,
                INVALID_TRANSITION, DATASET_SCOPE_INCOMPATIBLE
        """
        started = time.monotonic()
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        state = LedgerState(record.ledger_state)

        try:
            if state in LedgerTransitions.IMMUTABLE:
                raise LedgerError(
                    ErrorCode.IMMUTABILITY_CONFLICT,
                    f"Evidence {record.id} is already {state.value}; sealing is one-shot",
                    extra={"ledger_state": state.value}
                )
            if state == LedgerState.DRAFT or (state == LedgerState.READY_TO_SEAL and not record.payload_hash_sha256):
                raise LedgerError(
                    ErrorCode.MISSING_PAYLOAD,
                    f"Evidence {record.id} has no payload attached",
                    extra={"ledger_state": state.value}
                )
            require_state(record, "seal")

            metadata_canonical = canonicalize(build_seal_metadata(record))
            metadata_hash = hash_bytes(metadata_canonical)

            sealed_at = datetime.now(timezone.utc)
            resolution = QuarantineResolver.resolve_at_seal(record, sealed_at.date())
            retention_ends_at = compute_retention_ends_at(
                record.retention_policy, record.retention_custom_days, sealed_at
            )

            compare_and_swap(db, tenant_id, record, [LedgerState.READY_TO_SEAL], {
                "ledger_state": resolution.target_state,
                "metadata_canonical": metadata_canonical.decode("utf-8"),
                "metadata_hash_sha256": metadata_hash,
                "sealed_at": sealed_at,
                "attestor_user_id": ctx.identity.user_id,
                "attestor_email": ctx.identity.email,
                "attestation_method": ATTESTATION_METHOD,
                "retention_ends_at": retention_ends_at,
                "quarantine_past_due": resolution.past_due,
            })
        except LedgerError as e:
            record_seal_outcome(e.error_code)
            raise

        is_quarantine = resolution.target_state == LedgerState.QUARANTINED
        details: Dict[str, Any] = {
            "attestation_method": ATTESTATION_METHOD,
            "retention_policy": record.retention_policy,
            "retention_ends_at": retention_ends_at.isoformat(),
            "declared_scope": record.declared_scope,
            "scope_target_id": record.scope_target_id,
            "contains_personal_data": record.contains_personal_data,
            "gdpr_legal_basis": record.gdpr_legal_basis,
        }
        if is_quarantine:
            details.update(
                quarantine_reason=record.quarantine_reason,
                resolution_deadline=record.resolution_deadline.isoformat(),
                quarantine_past_due=resolution.past_due,
                days_overdue=resolution.days_overdue,
            )

        AuditTrail.record(
            db, ctx,
            evidence_id=record.id,
            sequence=record.version,
            event_type=AuditEventType.QUARANTINED if is_quarantine else AuditEventType.SEALED,
            from_state=LedgerState.READY_TO_SEAL.value,
            to_state=resolution.target_state.value,
            payload_hash_sha256=record.payload_hash_sha256,
            metadata_hash_sha256=metadata_hash,
            details=details
        )

        QuarantineResolver.flag_past_due(record, resolution, ctx.correlation_id)
        record_seal_outcome(resolution.target_state.value)
        observe_seal_duration(time.monotonic() - started)
        logger.info(
            f"Evidence {record.id} {resolution.target_state.value} tenant={tenant_id} "
            f"metadata_sha256={metadata_hash} correlation_id={ctx.correlation_id}"
        )
        return record

    @staticmethod
    def get_sealed_record(db: Session, tenant_id: str, evidence_id: Any) -> EvidenceRecord:
        """
        Load a SEALED or QUARANTINED record.

        Raises:
            LedgerError(NOT_FOUND): Missing, another tenant's, or not sealed yet
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        if LedgerState(record.ledger_state) not in LedgerTransitions.IMMUTABLE:
            raise not_found("Sealed evidence")
        return record

    @staticmethod
    def verify(db: Session, blob_store: BlobStore, tenant_id: str, evidence_id: Any) -> Dict[str, Any]:
        """
        Proof of no modification for a sealed record.

        Re-reads the payload bytes from the blob store and the canonical
        metadata from the record, rehashes both, and compares them with the
        record and with the hashes captured in its seal audit event.

        Raises:
            LedgerError: NOT_FOUND, SYSTEM_ERROR (blob store unreachable)
        """
        record = SealEngine.get_sealed_record(db, tenant_id, evidence_id)

        try:
            payload = blob_store.get_bytes(record.payload_uri)
        except BlobStoreError as e:
            logger.error(f"Blob read failed while verifying {record.id}: {e}", exc_info=True)
            raise LedgerError(ErrorCode.SYSTEM_ERROR, "Payload could not be read for verification")

        payload_ok = verify_hash(payload, record.payload_hash_sha256)
        metadata_ok = verify_hash((record.metadata_canonical or "").encode("utf-8"), record.metadata_hash_sha256)

        seal_events = [
            e for e in AuditTrail.replay(db, tenant_id, record.id)
            if e.event_type in (AuditEventType.SEALED, AuditEventType.QUARANTINED)
        ]
        seal_event = seal_events[0] if seal_events else None
        audit_ok = (
            seal_event is not None
            and seal_event.payload_hash_sha256 == record.payload_hash_sha256
            and seal_event.metadata_hash_sha256 == record.metadata_hash_sha256
        )

        verified = payload_ok and metadata_ok and audit_ok
        if not verified:
            logger.warning(
                f"Verification failed for {record.id} payload={payload_ok} "
                f"metadata={metadata_ok} audit={audit_ok}"
            )

        return {
            "evidence_id": str(record.id),
            "ledger_state": LedgerState(record.ledger_state).value,
            "verified": verified,
            "payload_hash_matches": payload_ok,
            "metadata_hash_matches": metadata_ok,
            "audit_event_matches": audit_ok,
            "payload_hash_sha256": record.payload_hash_sha256,
            "metadata_hash_sha256": record.metadata_hash_sha256,
            "sealed_at": record.sealed_at.isoformat() if record.sealed_at else None,
        }
