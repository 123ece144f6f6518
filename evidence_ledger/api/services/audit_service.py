"""
Audit trail service.

Every ledger state transition appends exactly one AuditEvent. There is no
update or delete function here, and the model refuses both at flush time.
"""
from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy.orm import Session

from evidence_ledger.api.core.security import RequestContext
from evidence_ledger.api.models.audit_event import AuditEvent


class AuditEventType:
    DRAFT_CREATED = "DRAFT_CREATED"
    METADATA_UPDATED = "METADATA_UPDATED"
    PAYLOAD_ATTACHED = "PAYLOAD_ATTACHED"
    SEALED = "SEALED"
    QUARANTINED = "QUARANTINED"
    QUARANTINE_RESOLVED = "QUARANTINE_RESOLVED"
    DRAFT_REJECTED = "DRAFT_REJECTED"


class AuditTrail:
    """Append-only recorder and replayer of ledger events."""

    @staticmethod
    def record(
        db: Session,
        ctx: RequestContext,
        evidence_id: uuid.UUID,
        sequence: int,
        event_type: str,
        from_state: Optional[str],
        to_state: str,
        details: Dict[str, Any],
        payload_hash_sha256: Optional[str] = None,
        metadata_hash_sha256: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an audit event to the caller's transaction.

        The event is flushed, not committed: it becomes durable together with
        the state change it describes, or not at all.

        Args:
            db: Database session
            ctx: Request context (tenant, actor, correlation id, idempotency key)
            evidence_id: Evidence the event belongs to
            sequence: Record version after the transition; unique per evidence
            event_type: One of AuditEventType
            from_state: State before the transition (None on creation)
            to_state: State after the transition
            details: Event-specific details
            payload_hash_sha256: Payload hash at the time of the event
            metadata_hash_sha256: Metadata hash at the time of the event

        Returns:
            Created AuditEvent instance
        """
        event = AuditEvent(
            tenant_id=ctx.tenant_id,
            evidence_id=evidence_id,
            sequence=sequence,
            event_type=event_type,
            from_state=from_state,
            to_state=to_state,
            actor_user_id=ctx.identity.user_id,
            actor_email=ctx.identity.email,
            payload_hash_sha256=payload_hash_sha256,
            metadata_hash_sha256=metadata_hash_sha256,
            correlation_id=ctx.correlation_id,
            idempotency_key=ctx.idempotency_key,
            details=details,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent
        )

        db.add(event)
        db.flush()

        return event

    @staticmethod
    def replay(db: Session, tenant_id: str, evidence_id: uuid.UUID) -> List[AuditEvent]:
        """
        Ordered event sequence of one evidence record.

        Returns an empty list for unknown ids and for another tenant's ids.
        """
        return (
            db.query(AuditEvent)
            .filter(AuditEvent.tenant_id == tenant_id, AuditEvent.evidence_id == evidence_id)
            .order_by(AuditEvent.sequence.asc())
            .all()
        )
