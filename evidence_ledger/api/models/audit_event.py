"""
Audit event model - append-only record of every evidence state transition.

Rows are never updated or deleted. The ORM listeners below refuse flushes
that would do so; migration 20261019000000 installs the equivalent trigger
on PostgreSQL.
"""
from sqlalchemy import Column, String, DateTime, Integer, Text, UniqueConstraint, Uuid, event
from sqlalchemy.sql import func
import uuid
from evidence_ledger.api.db.base import Base, JSONType


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("evidence_id", "sequence", name="uq_audit_event_sequence"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    evidence_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    event_type = Column(String(100), nullable=False, index=True)
    # EVENT_TYPES: DRAFT_CREATED, METADATA_UPDATED, PAYLOAD_ATTACHED, SEALED,
    #             QUARANTINED, QUARANTINE_RESOLVED, DRAFT_REJECTED
    from_state = Column(String(50), nullable=True)
    to_state = Column(String(50), nullable=False)

    actor_user_id = Column(String(255), nullable=False)
    actor_email = Column(String(255), nullable=True)

    payload_hash_sha256 = Column(String(64), nullable=True)
    metadata_hash_sha256 = Column(String(64), nullable=True)

    correlation_id = Column(String(100), nullable=True)
    idempotency_key = Column(String(255), nullable=True)
    details = Column(JSONType, nullable=False)

    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(Text, nullable=True)


class AuditEventImmutableError(RuntimeError):
    """Raised when code attempts to modify or delete an audit event."""


@event.listens_for(AuditEvent, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditEventImmutableError(f"Audit event {target.id} is append-only and cannot be updated")


@event.listens_for(AuditEvent, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditEventImmutableError(f"Audit event {target.id} is append-only and cannot be deleted")
