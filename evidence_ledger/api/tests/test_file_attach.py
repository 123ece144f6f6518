import hashlib

from conftest import supplier_declaration
from evidence_ledger.api.core.config import settings
from evidence_ledger.api.core.errors import ErrorCode

CERTIFICATE_PDF = b"%PDF-1.7\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"


def certificate_draft(ledger, **overrides):
    declaration = supplier_declaration(dataset_type="CERTIFICATE", source_system="OTHER", **overrides)
    return ledger.create_draft(declaration).json()["evidence"]["evidence_id"]


def test_attach_file_stores_raw_bytes(ledger):
    evidence_id = certificate_draft(ledger)

    response = ledger.attach_file(evidence_id, CERTIFICATE_PDF)

    body = response.json()
    assert response.status_code == 200
    assert body["evidence"]["ledger_state"] == "READY_TO_SEAL"
    assert body["payload_hash_sha256"] == hashlib.sha256(CERTIFICATE_PDF).hexdigest()
    assert body["payload_size_bytes"] == len(CERTIFICATE_PDF)
    assert body["evidence"]["payload_content_type"] == "application/pdf"


def test_file_attach_is_audited_with_filename(ledger):
    evidence_id = certificate_draft(ledger)
    ledger.attach_file(evidence_id, CERTIFICATE_PDF, filename="mill-cert-2026.pdf")

    event = ledger.audit(evidence_id).json()["events"][-1]

    assert event["event_type"] == "PAYLOAD_ATTACHED"
    assert event["payload_hash_sha256"] == hashlib.sha256(CERTIFICATE_PDF).hexdigest()
    assert event["details"]["original_filename"] == "mill-cert-2026.pdf"
    assert event["details"]["payload_content_type"] == "application/pdf"


def test_file_evidence_seals_and_verifies(ledger):
    evidence_id = certificate_draft(ledger)
    ledger.attach_file(evidence_id, CERTIFICATE_PDF)

    sealed = ledger.seal(evidence_id)
    verification = ledger.verify(evidence_id).json()["verification"]

    assert sealed.status_code == 200
    assert sealed.json()["evidence"]["ledger_state"] == "SEALED"
    assert verification["verified"] is True
    assert verification["payload_hash_matches"] is True


def test_manual_entry_rejects_files(ledger):
    evidence_id = ledger.create_draft(supplier_declaration(
        ingestion_method="MANUAL_ENTRY",
        entry_notes="Keyed in from the supplier onboarding questionnaire",
    )).json()["evidence"]["evidence_id"]

    response = ledger.attach_file(evidence_id, b"supplier,country\nNordic Ore AB,SE\n", "suppliers.csv", "text/csv")

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.INVALID_PAYLOAD
    assert body["field_errors"] == [{"field": "file", "message": "is not accepted for MANUAL_ENTRY"}]
    assert ledger.get_draft(evidence_id).json()["evidence"]["ledger_state"] == "DRAFT"


def test_empty_file_is_rejected(ledger):
    evidence_id = certificate_draft(ledger)

    response = ledger.attach_file(evidence_id, b"")

    assert response.status_code == 422
    assert response.json()["error_code"] == ErrorCode.INVALID_PAYLOAD
    assert ledger.get_draft(evidence_id).json()["evidence"]["ledger_state"] == "DRAFT"


def test_oversized_file_is_rejected(ledger, monkeypatch):
    evidence_id = certificate_draft(ledger)
    monkeypatch.setattr(settings, "MAX_PAYLOAD_BYTES", 16)

    response = ledger.attach_file(evidence_id, CERTIFICATE_PDF)

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.INVALID_PAYLOAD
    assert body["max_payload_bytes"] == 16


def test_missing_file_is_a_validation_error(ledger, client):
    evidence_id = certificate_draft(ledger)

    response = client.post(f"/api/v1/evidence/drafts/{evidence_id}/file", headers=ledger.headers())

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.VALIDATION_FAILED
    assert body["field_errors"][0]["field"] == "file"


def test_file_attach_replays_and_detects_changed_content(ledger):
    evidence_id = certificate_draft(ledger)

    first = ledger.attach_file(evidence_id, CERTIFICATE_PDF, key="cert-upload-1")
    replay = ledger.attach_file(evidence_id, CERTIFICATE_PDF, key="cert-upload-1")
    changed = ledger.attach_file(evidence_id, CERTIFICATE_PDF + b"% revised\n", key="cert-upload-1")

    assert replay.json() == first.json()
    assert replay.headers["Idempotent-Replayed"] == "true"
    assert changed.status_code == 409
    assert changed.json()["error_code"] == ErrorCode.IDEMPOTENCY_CONFLICT


def test_file_after_json_payload_is_an_invalid_transition(ledger):
    evidence_id = certificate_draft(ledger)
    ledger.attach(evidence_id)

    response = ledger.attach_file(evidence_id, CERTIFICATE_PDF)

    assert response.status_code == 409
    assert response.json()["error_code"] == ErrorCode.INVALID_TRANSITION
