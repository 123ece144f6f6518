import uuid
from datetime import timedelta

from conftest import today_utc, unknown_scope_declaration
from evidence_ledger.api.core.errors import ErrorCode
from evidence_ledger.api.models.evidence_record import EvidenceRecord
from evidence_ledger.observability.metrics import quarantine_past_due_total

RESOLVE_TO_LEGAL_ENTITY = {
    "declared_scope": "LEGAL_ENTITY",
    "scope_target_id": "le-002",
    "resolution_note": "Confirmed with procurement: Rhine Alloys GmbH",
}


def quarantined(ledger):
    evidence_id = ledger.ready_draft(unknown_scope_declaration())
    response = ledger.seal(evidence_id)
    assert response.json()["evidence"]["ledger_state"] == "QUARANTINED", response.json()
    return evidence_id, response.json()["evidence"]


def test_unknown_scope_seals_into_quarantine(ledger):
    evidence_id, evidence = quarantined(ledger)

    assert evidence["quarantine_past_due"] is False
    assert evidence["sealed_at"] is not None
    assert evidence["binding_context"]["link_status"] == "QUARANTINED"
    assert ledger.get_sealed(evidence_id).status_code == 200

    events = ledger.audit(evidence_id).json()["events"]
    assert events[-1]["event_type"] == "QUARANTINED"
    assert events[-1]["details"]["quarantine_past_due"] is False


def test_unknown_scope_preview_expects_quarantine(ledger):
    evidence_id = ledger.ready_draft(unknown_scope_declaration())

    preview = ledger.seal_preview(evidence_id).json()["preview"]

    assert preview["ready"] is True
    assert preview["expected_state"] == "QUARANTINED"


def test_deadline_outside_window_is_rejected(ledger):
    response = ledger.create_draft(unknown_scope_declaration(deadline_days=95))

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.VALIDATION_FAILED
    assert [fe["field"] for fe in body["field_errors"]] == ["resolution_deadline"]


def test_past_due_deadline_still_quarantines(ledger, db_session):
    evidence_id = ledger.ready_draft(unknown_scope_declaration())
    db_session.query(EvidenceRecord).filter(EvidenceRecord.id == uuid.UUID(evidence_id)).update(
        {"resolution_deadline": today_utc() - timedelta(days=1)}, synchronize_session=False
    )
    db_session.commit()
    before = quarantine_past_due_total.value(dataset_type="SUPPLIER_MASTER")

    response = ledger.seal(evidence_id)

    evidence = response.json()["evidence"]
    assert evidence["ledger_state"] == "QUARANTINED"
    assert evidence["quarantine_past_due"] is True
    assert quarantine_past_due_total.value(dataset_type="SUPPLIER_MASTER") == before + 1

    details = ledger.audit(evidence_id).json()["events"][-1]["details"]
    assert details["quarantine_past_due"] is True
    assert details["days_overdue"] == 1


def test_resolve_quarantine(ledger):
    evidence_id, quarantined_evidence = quarantined(ledger)

    response = ledger.resolve(evidence_id, RESOLVE_TO_LEGAL_ENTITY)

    evidence = response.json()["evidence"]
    assert response.status_code == 200
    assert evidence["ledger_state"] == "SEALED"
    assert evidence["declared_scope"] == "UNKNOWN"
    assert evidence["resolved_scope"] == "LEGAL_ENTITY"
    assert evidence["resolved_scope_target_id"] == "le-002"
    assert evidence["resolved_by_user_id"] == "user-1"
    assert evidence["binding_context"]["link_status"] == "LINKED"
    assert evidence["binding_context"]["scope_target_id"] == "le-002"
    # Seal-time hashes and stamp are kept
    assert evidence["payload_hash_sha256"] == quarantined_evidence["payload_hash_sha256"]
    assert evidence["metadata_hash_sha256"] == quarantined_evidence["metadata_hash_sha256"]
    assert evidence["sealed_at"] == quarantined_evidence["sealed_at"]

    event = ledger.audit(evidence_id).json()["events"][-1]
    assert event["event_type"] == "QUARANTINE_RESOLVED"
    assert event["from_state"] == "QUARANTINED"
    assert event["details"]["hashes_recomputed"] is False
    assert event["details"]["resolution_note"] == RESOLVE_TO_LEGAL_ENTITY["resolution_note"]


def test_resolved_record_still_verifies(ledger):
    evidence_id, _ = quarantined(ledger)
    ledger.resolve(evidence_id, RESOLVE_TO_LEGAL_ENTITY)

    assert ledger.verify(evidence_id).json()["verification"]["verified"] is True


def test_resolve_is_one_time(ledger):
    evidence_id, _ = quarantined(ledger)
    ledger.resolve(evidence_id, RESOLVE_TO_LEGAL_ENTITY)

    response = ledger.resolve(evidence_id, {"declared_scope": "ENTIRE_ORGANIZATION"})

    assert response.status_code == 409
    assert response.json()["error_code"] == ErrorCode.IMMUTABILITY_CONFLICT


def test_resolve_draft_is_invalid(ledger):
    evidence_id = ledger.ready_draft(unknown_scope_declaration())

    response = ledger.resolve(evidence_id, RESOLVE_TO_LEGAL_ENTITY)

    assert response.status_code == 409
    assert response.json()["error_code"] == ErrorCode.INVALID_TRANSITION


def test_resolve_requires_concrete_scope(ledger):
    evidence_id, _ = quarantined(ledger)

    unknown = ledger.resolve(evidence_id, {"declared_scope": "UNKNOWN"})
    missing_target = ledger.resolve(evidence_id, {"declared_scope": "LEGAL_ENTITY"})

    assert unknown.json()["error_code"] == ErrorCode.VALIDATION_FAILED
    assert unknown.json()["field_errors"][0]["field"] == "declared_scope"
    assert missing_target.json()["field_errors"] == [
        {"field": "scope_target_id", "message": "is required for LEGAL_ENTITY scope"}
    ]


def test_resolve_checks_dataset_scope_rules(ledger):
    evidence_id, _ = quarantined(ledger)

    response = ledger.resolve(evidence_id, {"declared_scope": "SITE", "scope_target_id": "site-7"})

    body = response.json()
    assert body["error_code"] == ErrorCode.DATASET_SCOPE_INCOMPATIBLE
    assert body["allowed_scopes"] == ["ENTIRE_ORGANIZATION", "LEGAL_ENTITY"]


def test_quarantined_record_cannot_be_sealed_again(ledger):
    evidence_id, _ = quarantined(ledger)

    response = ledger.seal(evidence_id)

    assert response.status_code == 409
    assert response.json()["error_code"] == ErrorCode.IMMUTABILITY_CONFLICT
