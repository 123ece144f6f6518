"""Evidence ledger tables and append-only audit trigger"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019000000"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

LEDGER_STATES = ("DRAFT", "READY_TO_SEAL", "SEALED", "QUARANTINED", "REJECTED")
IDEMPOTENCY_STATUSES = ("IN_PROGRESS", "SUCCEEDED", "FAILED")


def upgrade():
    op.create_table(
        "evidence_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("ledger_state", sa.Enum(*LEDGER_STATES, name="ledgerstate"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("ingestion_method", sa.String(length=50), nullable=False),
        sa.Column("dataset_type", sa.String(length=50), nullable=False),
        sa.Column("source_system", sa.String(length=50), nullable=False),
        sa.Column("declared_scope", sa.String(length=50), nullable=False),
        sa.Column("scope_target_id", sa.String(length=255), nullable=True),
        sa.Column("scope_target_name", sa.String(length=255), nullable=True),
        sa.Column("quarantine_reason", sa.Text(), nullable=True),
        sa.Column("resolution_deadline", sa.Date(), nullable=True),
        sa.Column("quarantine_past_due", sa.Boolean(), nullable=False),
        sa.Column("primary_intent", sa.Text(), nullable=False),
        sa.Column("purpose_tags", JSON_TYPE, nullable=False),
        sa.Column("contains_personal_data", sa.Boolean(), nullable=False),
        sa.Column("gdpr_legal_basis", sa.String(length=100), nullable=True),
        sa.Column("entry_notes", sa.Text(), nullable=True),
        sa.Column("external_reference_id", sa.String(length=255), nullable=True),
        sa.Column("snapshot_datetime_utc", sa.String(length=64), nullable=True),
        sa.Column("export_job_id", sa.String(length=255), nullable=True),
        sa.Column("connector_reference", sa.String(length=255), nullable=True),
        sa.Column("supplier_portal_request_id", sa.String(length=255), nullable=True),
        sa.Column("trust_level", sa.String(length=20), nullable=False),
        sa.Column("review_status", sa.String(length=20), nullable=False),
        sa.Column("payload_uri", sa.String(length=500), nullable=True),
        sa.Column("payload_size_bytes", sa.Integer(), nullable=True),
        sa.Column("payload_content_type", sa.String(length=100), nullable=True),
        sa.Column("payload_hash_sha256", sa.String(length=64), nullable=True),
        sa.Column("metadata_canonical", sa.Text(), nullable=True),
        sa.Column("metadata_hash_sha256", sa.String(length=64), nullable=True),
        sa.Column("retention_policy", sa.String(length=50), nullable=False),
        sa.Column("retention_custom_days", sa.Integer(), nullable=True),
        sa.Column("retention_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sealed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attestor_user_id", sa.String(length=255), nullable=True),
        sa.Column("attestor_email", sa.String(length=255), nullable=True),
        sa.Column("attestation_method", sa.String(length=50), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by_user_id", sa.String(length=255), nullable=True),
        sa.Column("resolved_scope", sa.String(length=50), nullable=True),
        sa.Column("resolved_scope_target_id", sa.String(length=255), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        # Sealed states always carry their hashes and seal stamp
        sa.CheckConstraint(
            "ledger_state NOT IN ('SEALED', 'QUARANTINED') OR "
            "(payload_hash_sha256 IS NOT NULL AND metadata_hash_sha256 IS NOT NULL AND sealed_at IS NOT NULL)",
            name="ck_evidence_sealed_has_hashes",
        ),
    )
    op.create_index("ix_evidence_records_tenant_id", "evidence_records", ["tenant_id"])
    op.create_index("ix_evidence_records_tenant_state", "evidence_records", ["tenant_id", "ledger_state"])

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("operation", sa.String(length=100), nullable=False),
        sa.Column("request_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("actor_user_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.Enum(*IDEMPOTENCY_STATUSES, name="idempotencystatus"), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("response_status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_idempotency_tenant_key"),
    )
    op.create_index("ix_idempotency_records_tenant_id", "idempotency_records", ["tenant_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("evidence_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("from_state", sa.String(length=50), nullable=True),
        sa.Column("to_state", sa.String(length=50), nullable=False),
        sa.Column("actor_user_id", sa.String(length=255), nullable=False),
        sa.Column("actor_email", sa.String(length=255), nullable=True),
        sa.Column("payload_hash_sha256", sa.String(length=64), nullable=True),
        sa.Column("metadata_hash_sha256", sa.String(length=64), nullable=True),
        sa.Column("correlation_id", sa.String(length=100), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.UniqueConstraint("evidence_id", "sequence", name="uq_audit_event_sequence"),
    )
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_evidence_id", "audit_events", ["evidence_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])

    if op.get_bind().dialect.name == "postgresql":
        op.execute("""
            CREATE OR REPLACE FUNCTION prevent_audit_event_modification()
            RETURNS TRIGGER AS $$
            BEGIN
                RAISE EXCEPTION 'audit_events is append-only: % not allowed', TG_OP;
            END;
            $$ LANGUAGE plpgsql;
        """)
        op.execute("""
            CREATE TRIGGER audit_events_append_only
            BEFORE UPDATE OR DELETE ON audit_events
            FOR EACH ROW EXECUTE FUNCTION prevent_audit_event_modification();
        """)


def downgrade():
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS audit_events_append_only ON audit_events")
        op.execute("DROP FUNCTION IF EXISTS prevent_audit_event_modification()")

    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_evidence_id", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_idempotency_records_tenant_id", table_name="idempotency_records")
    op.drop_table("idempotency_records")

    op.drop_index("ix_evidence_records_tenant_state", table_name="evidence_records")
    op.drop_index("ix_evidence_records_tenant_id", table_name="evidence_records")
    op.drop_table("evidence_records")

    sa.Enum(name="idempotencystatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="ledgerstate").drop(op.get_bind(), checkfirst=True)
