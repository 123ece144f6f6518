import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

# Settings and the engine are built at import time, so the environment has
# to be in place before anything from evidence_ledger is imported.
TEST_JWT_SECRET = "evidence-ledger-test-signing-secret-0001"
_DB_DIR = tempfile.mkdtemp(prefix="evidence-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'ledger.db')}"
os.environ["BLOB_BACKEND"] = "memory"
os.environ["AUTH_JWT_SECRET"] = TEST_JWT_SECRET
os.environ["AUTH_JWT_ALGORITHM"] = "HS256"
os.environ["LOG_LEVEL"] = "WARNING"

import jwt
import pytest
from fastapi.testclient import TestClient

from evidence_ledger.api.core.security import Identity, RequestContext
from evidence_ledger.api.db.base import Base
from evidence_ledger.api.db.session import SessionLocal, engine
from evidence_ledger.api.main import app

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


def make_token(tenant_id=TENANT_A, user_id="user-1", email="auditor@example.com"):
    claims = {"tenant_id": tenant_id, "sub": user_id, "email": email}
    return jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")


def today_utc():
    return datetime.now(timezone.utc).date()


def supplier_declaration(**overrides):
    declaration = {
        "ingestion_method": "FILE_UPLOAD",
        "dataset_type": "SUPPLIER_MASTER",
        "source_system": "SAP",
        "declared_scope": "LEGAL_ENTITY",
        "scope_target_id": "le-001",
        "scope_target_name": "ACME Steel GmbH",
        "primary_intent": "CBAM quarterly supplier master declaration",
        "purpose_tags": ["CBAM", "SUPPLIER_DUE_DILIGENCE"],
        "contains_personal_data": False,
        "retention_policy": "STANDARD_1_YEAR",
    }
    declaration.update(overrides)
    return declaration


def unknown_scope_declaration(deadline_days=45, **overrides):
    declaration = supplier_declaration(
        declared_scope="UNKNOWN",
        quarantine_reason="Legal entity mapping for this supplier file is still being confirmed",
        resolution_deadline=(today_utc() + timedelta(days=deadline_days)).isoformat(),
    )
    declaration.pop("scope_target_id")
    declaration.pop("scope_target_name")
    declaration.update(overrides)
    return declaration


SUPPLIER_PAYLOAD = {
    "suppliers": [
        {"supplier_id": "S-100", "name": "Nordic Ore AB", "country": "SE"},
        {"supplier_id": "S-200", "name": "Rhine Alloys GmbH", "country": "DE"},
    ],
    "period": "2026-Q3",
}


class LedgerClient:
    """Thin wrapper over TestClient speaking the ledger API for one tenant/actor."""

    def __init__(self, client, tenant_id=TENANT_A, user_id="user-1"):
        self.client = client
        self.tenant_id = tenant_id
        self.user_id = user_id

    def headers(self, key=None, **extra):
        headers = {"Authorization": f"Bearer {make_token(self.tenant_id, self.user_id)}"}
        if key is not False:
            headers["Idempotency-Key"] = key or str(uuid.uuid4())
        headers.update(extra)
        return headers

    def create_draft(self, declaration=None, key=None):
        return self.client.post(
            "/api/v1/evidence/drafts",
            json=declaration if declaration is not None else supplier_declaration(),
            headers=self.headers(key)
        )

    def update_draft(self, evidence_id, changes, key=None):
        return self.client.patch(f"/api/v1/evidence/drafts/{evidence_id}", json=changes, headers=self.headers(key))

    def attach(self, evidence_id, payload=None, key=None, **extra_body):
        body = {"payload": SUPPLIER_PAYLOAD if payload is None else payload}
        body.update(extra_body)
        return self.client.post(f"/api/v1/evidence/drafts/{evidence_id}/payload", json=body, headers=self.headers(key))

    def attach_file(self, evidence_id, content, filename="certificate.pdf", content_type="application/pdf", key=None):
        return self.client.post(
            f"/api/v1/evidence/drafts/{evidence_id}/file",
            files={"file": (filename, content, content_type)},
            headers=self.headers(key)
        )

    def seal(self, evidence_id, key=None):
        return self.client.post(f"/api/v1/evidence/{evidence_id}/seal", headers=self.headers(key))

    def resolve(self, evidence_id, body, key=None):
        return self.client.post(
            f"/api/v1/evidence/{evidence_id}/resolve-quarantine", json=body, headers=self.headers(key)
        )

    def reject(self, evidence_id, reason, key=None):
        return self.client.post(
            f"/api/v1/evidence/drafts/{evidence_id}/reject", json={"reason": reason}, headers=self.headers(key)
        )

    def get_draft(self, evidence_id):
        return self.client.get(f"/api/v1/evidence/drafts/{evidence_id}", headers=self.headers(False))

    def seal_preview(self, evidence_id):
        return self.client.get(f"/api/v1/evidence/drafts/{evidence_id}/seal-preview", headers=self.headers(False))

    def get_sealed(self, evidence_id):
        return self.client.get(f"/api/v1/evidence/{evidence_id}", headers=self.headers(False))

    def audit(self, evidence_id):
        return self.client.get(f"/api/v1/evidence/{evidence_id}/audit", headers=self.headers(False))

    def verify(self, evidence_id):
        return self.client.get(f"/api/v1/evidence/{evidence_id}/verify", headers=self.headers(False))

    def list(self, **params):
        return self.client.get("/api/v1/evidence", params=params, headers=self.headers(False))

    def ready_draft(self, declaration=None, payload=None):
        """Create a draft and attach a payload; returns the evidence id."""
        created = self.create_draft(declaration)
        assert created.status_code == 201, created.json()
        evidence_id = created.json()["evidence"]["evidence_id"]
        attached = self.attach(evidence_id, payload)
        assert attached.status_code == 200, attached.json()
        return evidence_id


@pytest.fixture(autouse=True)
def clean_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def ledger(client):
    return LedgerClient(client, TENANT_A, "user-1")


@pytest.fixture
def other_tenant(client):
    return LedgerClient(client, TENANT_B, "user-9")


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def request_context():
    def build(tenant_id=TENANT_A, user_id="user-1", key=None):
        return RequestContext(
            identity=Identity(tenant_id=tenant_id, user_id=user_id, email=f"{user_id}@example.com"),
            correlation_id=str(uuid.uuid4()),
            idempotency_key=key or str(uuid.uuid4()),
        )
    return build
