import pytest

from conftest import unknown_scope_declaration
from evidence_ledger.api.core.errors import ErrorCode


@pytest.mark.parametrize("changes", [
    {"declared_scope": "ENTIRE_ORGANIZATION"},
    {"scope_target_id": "le-999"},
    {"scope_target_name": "Someone Else GmbH"},
    {"declared_scope": "LEGAL_ENTITY", "primary_intent": "Sneaking a scope change in with an edit"},
])
def test_scope_cannot_change_on_draft(ledger, changes):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, changes)

    body = response.json()
    assert response.status_code == 422
    assert body["error_code"] == ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION
    assert ledger.get_draft(evidence_id).json()["evidence"]["version"] == 1


def test_quarantine_fields_cannot_change(ledger):
    evidence_id = ledger.create_draft(unknown_scope_declaration()).json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, {"resolution_deadline": "2030-01-01"})

    assert response.json()["error_code"] == ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION


def test_scope_cannot_change_when_ready_to_seal(ledger):
    evidence_id = ledger.ready_draft()

    response = ledger.update_draft(evidence_id, {"scope_target_id": "le-002"})

    assert response.json()["error_code"] == ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION


def test_scope_change_on_sealed_record_reports_scope_error(ledger):
    evidence_id = ledger.ready_draft()
    ledger.seal(evidence_id)

    response = ledger.update_draft(evidence_id, {"declared_scope": "ENTIRE_ORGANIZATION"})

    assert response.json()["error_code"] == ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION


def test_attach_cannot_carry_scope_changes(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.attach(evidence_id, scope_target_id="le-002")

    body = response.json()
    assert body["error_code"] == ErrorCode.SCOPE_IMMUTABLE_AFTER_DECLARATION
    assert body["field_errors"] == [{"field": "scope_target_id", "message": "is immutable after declaration"}]
    assert ledger.get_draft(evidence_id).json()["evidence"]["ledger_state"] == "DRAFT"


def test_scope_error_lists_every_attempted_field(ledger):
    evidence_id = ledger.create_draft().json()["evidence"]["evidence_id"]

    response = ledger.update_draft(evidence_id, {"declared_scope": "SITE", "scope_target_id": "site-1"})

    assert [fe["field"] for fe in response.json()["field_errors"]] == ["declared_scope", "scope_target_id"]
