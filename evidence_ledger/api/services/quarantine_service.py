"""
Scope and quarantine resolver.

At seal time the declared scope decides between SEALED and QUARANTINED.
Quarantined evidence leaves quarantine exactly once, through
resolve_quarantine(), which binds it to a concrete scope and seals it
without touching the seal-time hashes.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from evidence_ledger.api.core.errors import ErrorCode, FieldError, LedgerError, validation_failed
from evidence_ledger.api.core.logging import logger
from evidence_ledger.api.core.security import RequestContext
from evidence_ledger.api.models.evidence_record import (
    DatasetType,
    DeclaredScope,
    EvidenceRecord,
    LedgerState,
)
from evidence_ledger.api.services.audit_service import AuditEventType, AuditTrail
from evidence_ledger.api.services.declaration import (
    DATASET_SCOPE_RULES,
    MIN_QUARANTINE_REASON_LENGTH,
    TARGETED_SCOPES,
)
from evidence_ledger.api.services.draft_service import DraftStore
from evidence_ledger.api.services.status_fsm import compare_and_swap, require_state
from evidence_ledger.observability.metrics import record_past_due_quarantine, record_seal_outcome


@dataclass(frozen=True)
class ScopeResolution:
    """Outcome of re-validating a record's scope at seal time."""
    target_state: LedgerState
    past_due: bool = False
    days_overdue: int = 0


class QuarantineResolver:

    @staticmethod
    def resolve_at_seal(record: EvidenceRecord, today: date) -> ScopeResolution:
        """
        Re-validate the declared scope and pick the terminal state.

        A passed deadline does not block quarantine entry; it is reported via
        ``past_due`` so the record is never dropped.

        Raises:
            LedgerError(DATASET_SCOPE_INCOMPATIBLE): Stored scope no longer valid for the dataset
            LedgerError(VALIDATION_FAILED): UNKNOWN scope missing its reason or deadline
        """
        scope = DeclaredScope(record.declared_scope)
        dataset = DatasetType(record.dataset_type)
        if scope not in DATASET_SCOPE_RULES[dataset]:
            raise LedgerError(
                ErrorCode.DATASET_SCOPE_INCOMPATIBLE,
                f"{dataset.value} cannot be scoped to {scope.value}",
                extra={"allowed_scopes": sorted(s.value for s in DATASET_SCOPE_RULES[dataset])}
            )

        if scope != DeclaredScope.UNKNOWN:
            if scope in TARGETED_SCOPES and not record.scope_target_id:
                raise validation_failed([FieldError("scope_target_id", f"is required for {scope.value} scope")])
            return ScopeResolution(target_state=LedgerState.SEALED)

        errors = []
        if not record.quarantine_reason or len(record.quarantine_reason) < MIN_QUARANTINE_REASON_LENGTH:
            errors.append(FieldError("quarantine_reason", "is required when scope is UNKNOWN"))
        if record.resolution_deadline is None:
            errors.append(FieldError("resolution_deadline", "is required when scope is UNKNOWN"))
        if errors:
            raise validation_failed(errors)

        days_overdue = (today - record.resolution_deadline).days
        return ScopeResolution(
            target_state=LedgerState.QUARANTINED,
            past_due=days_overdue > 0,
            days_overdue=max(days_overdue, 0)
        )

    @staticmethod
    def flag_past_due(record: EvidenceRecord, resolution: ScopeResolution, correlation_id: str) -> None:
        """Operational alert for quarantine entered after its deadline."""
        if not resolution.past_due:
            return
        record_past_due_quarantine(record.dataset_type)
        logger.warning(
            f"Evidence {record.id} quarantined {resolution.days_overdue} day(s) past its resolution "
            f"deadline {record.resolution_deadline.isoformat()} tenant={record.tenant_id} "
            f"correlation_id={correlation_id}"
        )

    @staticmethod
    def resolve_quarantine(
        db: Session,
        tenant_id: str,
        evidence_id: Any,
        declared_scope: Optional[str],
        scope_target_id: Optional[str],
        ctx: RequestContext,
        resolution_note: Optional[str] = None
    ) -> EvidenceRecord:
        """
        Bind a quarantined record to a concrete scope and seal it.

        The payload and metadata hashes computed when the record was
        quarantined are kept as they are; the resolution is recorded in its
        own audit event.

        Raises:
            LedgerError: NOT_FOUND, IMMUTABILITY_CONFLICT (already SEALED),
                INVALID_TRANSITION (not QUARANTINED), VALIDATION_FAILED,
                DATASET_SCOPE_INCOMPATIBLE
        """
        record = DraftStore.get_record(db, tenant_id, evidence_id)
        require_state(record, "resolveQuarantine")

        errors = []
        scope = None
        try:
            scope = DeclaredScope((declared_scope or "").strip())
        except ValueError:
            errors.append(FieldError(
                "declared_scope",
                f"must be one of: {', '.join(s.value for s in DeclaredScope if s != DeclaredScope.UNKNOWN)}"
            ))
        if scope == DeclaredScope.UNKNOWN:
            errors.append(FieldError("declared_scope", "must be a concrete scope to resolve quarantine"))
        target_id = (scope_target_id or "").strip() or None
        if scope in TARGETED_SCOPES and target_id is None:
            errors.append(FieldError("scope_target_id", f"is required for {scope.value} scope"))
        elif scope == DeclaredScope.ENTIRE_ORGANIZATION and target_id is not None:
            errors.append(FieldError("scope_target_id", "must not be set for ENTIRE_ORGANIZATION scope"))
        if errors:
            raise validation_failed(errors)

        dataset = DatasetType(record.dataset_type)
        if scope not in DATASET_SCOPE_RULES[dataset]:
            raise LedgerError(
                ErrorCode.DATASET_SCOPE_INCOMPATIBLE,
                f"{dataset.value} cannot be scoped to {scope.value}",
                extra={"allowed_scopes": sorted(
                    s.value for s in DATASET_SCOPE_RULES[dataset] if s != DeclaredScope.UNKNOWN
                )}
            )

        compare_and_swap(db, tenant_id, record, [LedgerState.QUARANTINED], {
            "ledger_state": LedgerState.SEALED,
            "resolved_at": datetime.now(timezone.utc),
            "resolved_by_user_id": ctx.identity.user_id,
            "resolved_scope": scope.value,
            "resolved_scope_target_id": target_id,
        })

        AuditTrail.record(
            db, ctx,
            evidence_id=record.id,
            sequence=record.version,
            event_type=AuditEventType.QUARANTINE_RESOLVED,
            from_state=LedgerState.QUARANTINED.value,
            to_state=LedgerState.SEALED.value,
            payload_hash_sha256=record.payload_hash_sha256,
            metadata_hash_sha256=record.metadata_hash_sha256,
            details={
                "resolved_scope": scope.value,
                "resolved_scope_target_id": target_id,
                "resolution_note": resolution_note,
                "resolution_deadline": record.resolution_deadline.isoformat() if record.resolution_deadline else None,
                "hashes_recomputed": False,
            }
        )

        record_seal_outcome("QUARANTINE_RESOLVED")
        logger.info(
            f"Quarantine resolved for {record.id} scope={scope.value} target={target_id} "
            f"correlation_id={ctx.correlation_id}"
        )
        return record
