"""
Initialize the Evidence Ledger schema for local development.
Creates all tables from SQLAlchemy models (use run_migrations.py in deployments).
"""
import sys

from evidence_ledger.api.db.base import Base
from evidence_ledger.api.db.session import engine

# Import all models to ensure they're registered
from evidence_ledger.api.models.evidence_record import EvidenceRecord
from evidence_ledger.api.models.idempotency_record import IdempotencyRecord
from evidence_ledger.api.models.audit_event import AuditEvent

print("Creating all database tables...")
print(f"Database URL: {engine.url.render_as_string(hide_password=True)}")

try:
    Base.metadata.create_all(bind=engine)
    print("All tables created successfully!")

    print("\nCreated tables:")
    for table in Base.metadata.sorted_tables:
        print(f"  - {table.name}")

except Exception as e:
    print(f"Error creating tables: {e}")
    sys.exit(1)
