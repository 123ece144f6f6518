"""
Evidence record model - the central ledger entity.

DRAFT and READY_TO_SEAL rows are mutable through the draft service only.
SEALED and QUARANTINED rows are terminal; the single permitted exit is
QUARANTINED -> SEALED via quarantine resolution. There is no delete path.
"""
from sqlalchemy import Column, String, DateTime, Date, Integer, Boolean, Text, Index, CheckConstraint, Uuid, Enum as SQLEnum
from sqlalchemy.sql import func
import uuid
import enum
from evidence_ledger.api.db.base import Base, JSONType


class LedgerState(str, enum.Enum):
    DRAFT = "DRAFT"
    READY_TO_SEAL = "READY_TO_SEAL"
    SEALED = "SEALED"
    QUARANTINED = "QUARANTINED"
    REJECTED = "REJECTED"


class IngestionMethod(str, enum.Enum):
    FILE_UPLOAD = "FILE_UPLOAD"
    ERP_EXPORT = "ERP_EXPORT"
    ERP_API = "ERP_API"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"
    API_PUSH = "API_PUSH"
    MANUAL_ENTRY = "MANUAL_ENTRY"


class DatasetType(str, enum.Enum):
    SUPPLIER_MASTER = "SUPPLIER_MASTER"
    PRODUCT_MASTER = "PRODUCT_MASTER"
    BOM = "BOM"
    CERTIFICATE = "CERTIFICATE"
    TEST_REPORT = "TEST_REPORT"
    TRANSACTION_LOG = "TRANSACTION_LOG"


class DeclaredScope(str, enum.Enum):
    ENTIRE_ORGANIZATION = "ENTIRE_ORGANIZATION"
    LEGAL_ENTITY = "LEGAL_ENTITY"
    SITE = "SITE"
    PRODUCT_FAMILY = "PRODUCT_FAMILY"
    UNKNOWN = "UNKNOWN"


class SourceSystem(str, enum.Enum):
    SAP = "SAP"
    MICROSOFT_DYNAMICS = "MICROSOFT_DYNAMICS"
    ORACLE = "ORACLE"
    ODOO = "ODOO"
    NETSUITE = "NETSUITE"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"
    INTERNAL_MANUAL = "INTERNAL_MANUAL"
    OTHER = "OTHER"


class TrustLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ReviewStatus(str, enum.Enum):
    NOT_REVIEWED = "NOT_REVIEWED"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RetentionPolicy(str, enum.Enum):
    STANDARD_1_YEAR = "STANDARD_1_YEAR"
    THREE_YEARS = "3_YEARS"
    SEVEN_YEARS = "7_YEARS"
    CUSTOM = "CUSTOM"


class EvidenceRecord(Base):
    __tablename__ = "evidence_records"
    __table_args__ = (
        Index("ix_evidence_records_tenant_state", "tenant_id", "ledger_state"),
        # Sealed states always carry their hashes and seal stamp
        CheckConstraint(
            "ledger_state NOT IN ('SEALED', 'QUARANTINED') OR "
            "(payload_hash_sha256 IS NOT NULL AND metadata_hash_sha256 IS NOT NULL AND sealed_at IS NOT NULL)",
            name="ck_evidence_sealed_has_hashes",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)

    ledger_state = Column(SQLEnum(LedgerState, name="ledgerstate"), nullable=False, default=LedgerState.DRAFT)
    # Bumped by every mutation; compare-and-swap guard and audit sequence
    version = Column(Integer, nullable=False, default=1)

    # Provenance (fixed at declaration)
    ingestion_method = Column(String(50), nullable=False)
    dataset_type = Column(String(50), nullable=False)
    source_system = Column(String(50), nullable=False)

    # Scope binding (fixed at declaration)
    declared_scope = Column(String(50), nullable=False)
    scope_target_id = Column(String(255), nullable=True)
    scope_target_name = Column(String(255), nullable=True)
    quarantine_reason = Column(Text, nullable=True)
    resolution_deadline = Column(Date, nullable=True)
    quarantine_past_due = Column(Boolean, nullable=False, default=False)

    # Declaration
    primary_intent = Column(Text, nullable=False)
    purpose_tags = Column(JSONType, nullable=False)
    contains_personal_data = Column(Boolean, nullable=False)
    gdpr_legal_basis = Column(String(100), nullable=True)
    entry_notes = Column(Text, nullable=True)
    external_reference_id = Column(String(255), nullable=True)
    snapshot_datetime_utc = Column(String(64), nullable=True)
    export_job_id = Column(String(255), nullable=True)
    connector_reference = Column(String(255), nullable=True)
    supplier_portal_request_id = Column(String(255), nullable=True)

    # Derived, server-side only
    trust_level = Column(String(20), nullable=False)
    review_status = Column(String(20), nullable=False)

    # Payload (blob reference) and hashes
    payload_uri = Column(String(500), nullable=True)
    payload_size_bytes = Column(Integer, nullable=True)
    payload_content_type = Column(String(100), nullable=True)
    payload_hash_sha256 = Column(String(64), nullable=True)
    metadata_canonical = Column(Text, nullable=True)
    metadata_hash_sha256 = Column(String(64), nullable=True)

    # Retention
    retention_policy = Column(String(50), nullable=False)
    retention_custom_days = Column(Integer, nullable=True)
    retention_ends_at = Column(DateTime(timezone=True), nullable=True)

    # Seal stamp
    sealed_at = Column(DateTime(timezone=True), nullable=True)
    attestor_user_id = Column(String(255), nullable=True)
    attestor_email = Column(String(255), nullable=True)
    attestation_method = Column(String(50), nullable=True)

    # Quarantine resolution
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by_user_id = Column(String(255), nullable=True)
    resolved_scope = Column(String(50), nullable=True)
    resolved_scope_target_id = Column(String(255), nullable=True)

    # Rejection
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_by_user_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
