import hashlib
import json

from conftest import SUPPLIER_PAYLOAD, supplier_declaration
from evidence_ledger.api.core.errors import ErrorCode


def canonical_sha256(payload):
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def test_create_draft(ledger):
    response = ledger.create_draft(supplier_declaration(trust_level="HIGH", review_status="APPROVED"))

    assert response.status_code == 201
    body = response.json()
    evidence = body["evidence"]
    assert body["ok"] is True
    assert body["correlation_id"] == response.headers["X-Correlation-ID"]
    assert evidence["ledger_state"] == "DRAFT"
    assert evidence["version"] == 1
    assert evidence["tenant_id"] == "tenant-a"
    assert evidence["created_by_user_id"] == "user-1"
    # Caller-supplied trust is ignored; FILE_UPLOAD is MEDIUM
    assert evidence["trust_level"] == "MEDIUM"
    assert evidence["review_status"] == "APPROVED"
    assert evidence["retention_ends_at"] is None
    assert evidence["retention_display"] == "Pending (computed at seal)"
    assert evidence["payload_hash_sha256"] is None


def test_create_draft_binding_context(ledger):
    evidence = ledger.create_draft().json()["evidence"]

    assert evidence["binding_context"] == {
        "ingestion_method": "FILE_UPLOAD",
        "dataset_type": "SUPPLIER_MASTER",
        "source_system": "SAP",
        "declared_scope": "LEGAL_ENTITY",
        "scope_target_id": "le-001",
        "link_status": "LINKED",
        "trust_level": "MEDIUM",
        "review_status": "APPROVED",
    }


def test_manual_entry_draft_is_low_trust_and_pending_review(ledger):
    response = ledger.create_draft(supplier_declaration(
        ingestion_method="MANUAL_ENTRY",
        entry_notes="Keyed in from the supplier onboarding questionnaire",
    ))

    evidence = response.json()["evidence"]
    assert evidence["trust_level"] == "LOW"
    assert evidence["review_status"] == "PENDING_REVIEW"
    assert evidence["source_system"] == "INTERNAL_MANUAL"


def test_create_draft_validation_errors_are_batched(ledger):
    response = ledger.create_draft({"ingestion_method": "FILE_UPLOAD"})

    body = response.json()
    assert response.status_code == 422
    assert body["ok"] is False
    assert body["error_code"] == ErrorCode.VALIDATION_FAILED
    assert body["correlation_id"] == response.headers["X-Correlation-ID"]
    assert len(body["field_errors"]) > 1


def test_unsupported_combination_lists_allowed_methods(ledger):
    response = ledger.create_draft(supplier_declaration(
        ingestion_method="ERP_API",
        dataset_type="CERTIFICATE",
        snapshot_datetime_utc="2026-10-01T00:00:00Z",
        connector_reference="sap-conn-1",
    ))

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.UNSUPPORTED_METHOD_DATASET_COMBINATION
    assert "FILE_UPLOAD" in body["allowed_methods"]


def test_attach_payload_moves_to_ready_to_seal(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.attach(evidence_id)

    body = response.json()
    assert response.status_code == 200
    assert body["evidence"]["ledger_state"] == "READY_TO_SEAL"
    assert body["evidence"]["version"] == 2
    assert body["payload_hash_sha256"] == canonical_sha256(SUPPLIER_PAYLOAD)
    assert body["evidence"]["payload_content_type"] == "application/json"
    assert body["evidence"]["payload_uri"].startswith("mem://")


def test_payload_hash_ignores_key_order(ledger):
    first = ledger.ready_draft(payload={"b": 2, "a": {"y": 1, "x": 2}})
    second = ledger.ready_draft(payload={"a": {"x": 2, "y": 1}, "b": 2})

    assert ledger.get_draft(first).json()["evidence"]["payload_hash_sha256"] == \
        ledger.get_draft(second).json()["evidence"]["payload_hash_sha256"]


def test_attach_rejects_non_object_payload(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.attach(evidence_id, payload="just a string")

    assert response.status_code == 422
    assert response.json()["error_code"] == ErrorCode.INVALID_PAYLOAD
    assert ledger.get_draft(evidence_id).json()["evidence"]["ledger_state"] == "DRAFT"


def test_attach_rejects_empty_object(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.attach(evidence_id, payload={})

    assert response.json()["error_code"] == ErrorCode.INVALID_PAYLOAD


def test_attach_requires_payload_field(ledger, client):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = client.post(
        f"/api/v1/evidence/drafts/{evidence_id}/payload",
        json={"data": SUPPLIER_PAYLOAD},
        headers=ledger.headers()
    )

    assert response.status_code == 422
    assert response.json()["field_errors"] == [{"field": "payload", "message": "is required"}]


def test_second_attach_is_an_invalid_transition(ledger):
    evidence_id = ledger.ready_draft()

    response = ledger.attach(evidence_id, payload={"other": "payload"})

    body = response.json()
    assert response.status_code == 409
    assert body["error_code"] == ErrorCode.INVALID_TRANSITION
    assert body["ledger_state"] == "READY_TO_SEAL"


def test_manual_entry_placeholders_are_rejected(ledger):
    evidence_id = ledger.create_draft(supplier_declaration(
        ingestion_method="MANUAL_ENTRY",
        entry_notes="Keyed in from the supplier onboarding questionnaire",
    )).json()["evidence"]["evidence_id"]

    response = ledger.attach(evidence_id, payload={"supplier": "Nordic Ore AB", "vat_id": "TBD"})

    body = response.json()
    assert body["error_code"] == ErrorCode.INVALID_PAYLOAD
    assert body["field_errors"] == [{"field": "vat_id", "message": "placeholder value is not evidence"}]


def test_placeholders_are_allowed_for_system_sources(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.attach(evidence_id, payload={"supplier": "Nordic Ore AB", "vat_id": "n/a"})

    assert response.status_code == 200


def test_update_metadata(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, {
        "primary_intent": "CBAM annual supplier master declaration",
        "purpose_tags": ["CBAM"],
    })

    evidence = response.json()["evidence"]
    assert response.status_code == 200
    assert evidence["primary_intent"] == "CBAM annual supplier master declaration"
    assert evidence["purpose_tags"] == ["CBAM"]
    assert evidence["version"] == 2
    assert evidence["ledger_state"] == "DRAFT"


def test_update_metadata_keeps_ready_to_seal(ledger):
    evidence_id = ledger.ready_draft()

    response = ledger.update_draft(evidence_id, {"retention_policy": "7_YEARS"})

    evidence = response.json()["evidence"]
    assert evidence["ledger_state"] == "READY_TO_SEAL"
    assert evidence["retention_policy"] == "7_YEARS"


def test_update_metadata_revalidates_the_declaration(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, {"contains_personal_data": True})

    body = response.json()
    assert body["error_code"] == ErrorCode.VALIDATION_FAILED
    assert body["field_errors"][0]["field"] == "gdpr_legal_basis"


def test_update_metadata_cannot_change_provenance(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, {"ingestion_method": "ERP_API"})

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.VALIDATION_FAILED
    assert body["field_errors"][0]["field"] == "ingestion_method"


def test_empty_update_is_rejected(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, {})

    assert response.json()["error_code"] == ErrorCode.VALIDATION_FAILED


def test_reject_draft(ledger):
    evidence_id = ledger.ready_draft()

    response = ledger.reject(evidence_id, "Uploaded the wrong quarter's supplier file")

    evidence = response.json()["evidence"]
    assert response.status_code == 200
    assert evidence["ledger_state"] == "REJECTED"
    assert evidence["rejection_reason"] == "Uploaded the wrong quarter's supplier file"
    assert evidence["rejected_at"] is not None


def test_reject_requires_reason(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.reject(evidence_id, "oops")

    assert response.json()["field_errors"][0]["field"] == "reason"


def test_rejected_draft_cannot_be_updated(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]
    ledger.reject(evidence_id, "Duplicate of an existing declaration")

    response = ledger.update_draft(evidence_id, {"primary_intent": "Trying again after rejection"})

    assert response.status_code == 409
    assert response.json()["error_code"] == ErrorCode.INVALID_TRANSITION


def test_seal_preview_for_ready_draft(ledger):
    evidence_id = ledger.ready_draft()

    preview = ledger.seal_preview(evidence_id).json()["preview"]

    assert preview["ready"] is True
    assert preview["blocking_issues"] == []
    assert preview["expected_state"] == "SEALED"
    assert preview["payload_hash_sha256"] == canonical_sha256(SUPPLIER_PAYLOAD)
    assert preview["metadata_hash_sha256"] == canonical_sha256(preview["metadata"])
    assert preview["retention_ends_at_if_sealed_now"] is not None


def test_seal_preview_reports_missing_payload(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    preview = ledger.seal_preview(evidence_id).json()["preview"]

    assert preview["ready"] is False
    assert preview["blocking_issues"] == [ErrorCode.MISSING_PAYLOAD]
    assert preview["retention_ends_at_if_sealed_now"] is None


def test_get_draft_snapshot_for_unknown_id(ledger):
    response = ledger.get_draft("not-a-uuid")

    assert response.status_code == 404
    assert response.json()["error_code"] == ErrorCode.NOT_FOUND


def test_list_evidence_filters(ledger):
    draft_id = ledger.create_draft().json()["evidence"]["evidence_id"]
    ready_id = ledger.ready_draft()

    everything = ledger.list().json()
    drafts = ledger.list(ledger_state="DRAFT").json()

    assert everything["count"] == 2
    assert {item["evidence_id"] for item in everything["items"]} == {draft_id, ready_id}
    assert [item["evidence_id"] for item in drafts["items"]] == [draft_id]


def test_list_evidence_rejects_unknown_filter(ledger):
    response = ledger.list(ledger_state="ARCHIVED")

    assert response.status_code == 422
    assert response.json()["field_errors"][0]["field"] == "ledger_state"
