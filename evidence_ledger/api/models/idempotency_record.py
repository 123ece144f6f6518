"""
Idempotency record model - one row per (tenant_id, idempotency_key).
"""
from sqlalchemy import Column, String, DateTime, Integer, UniqueConstraint, Uuid, Enum as SQLEnum
from sqlalchemy.sql import func
import uuid
import enum
from evidence_ledger.api.db.base import Base, JSONType


class IdempotencyStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_idempotency_tenant_key"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    idempotency_key = Column(String(255), nullable=False)

    operation = Column(String(100), nullable=False)  # createDraft, seal, ...
    request_fingerprint = Column(String(64), nullable=False)
    actor_user_id = Column(String(255), nullable=False)

    status = Column(SQLEnum(IdempotencyStatus, name="idempotencystatus"), nullable=False, default=IdempotencyStatus.IN_PROGRESS)
    attempts = Column(Integer, nullable=False, default=1)

    response_status_code = Column(Integer, nullable=True)
    response_body = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    claimed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)  # reset on every re-arm
    completed_at = Column(DateTime(timezone=True), nullable=True)
