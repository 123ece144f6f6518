"""
Ledger state machine.

DRAFT --attach payload--> READY_TO_SEAL --seal--> SEALED | QUARANTINED
QUARANTINED --resolve--> SEALED
DRAFT | READY_TO_SEAL --reject--> REJECTED

Every state change goes through compare_and_swap(): a single conditional
UPDATE guarded by tenant, current state and version. Whoever loses the race
sees zero affected rows and gets an error, never a second transition.
"""
from typing import Any, Dict, Iterable, List
import uuid

from sqlalchemy import update
from sqlalchemy.orm import Session

from evidence_ledger.api.core.errors import ErrorCode, LedgerError
from evidence_ledger.api.models.evidence_record import EvidenceRecord, LedgerState


class LedgerTransitions:
    """Allowed transitions. Anything not listed is illegal."""

    ALLOWED: Dict[LedgerState, List[LedgerState]] = {
        LedgerState.DRAFT: [LedgerState.READY_TO_SEAL, LedgerState.REJECTED],
        LedgerState.READY_TO_SEAL: [LedgerState.SEALED, LedgerState.QUARANTINED, LedgerState.REJECTED],
        LedgerState.QUARANTINED: [LedgerState.SEALED],
        # SEALED and REJECTED are terminal
    }

    # States an operation may start from
    OPERATION_SOURCES: Dict[str, List[LedgerState]] = {
        "updateDraftMetadata": [LedgerState.DRAFT, LedgerState.READY_TO_SEAL],
        "attachPayload": [LedgerState.DRAFT],
        "seal": [LedgerState.READY_TO_SEAL],
        "resolveQuarantine": [LedgerState.QUARANTINED],
        "rejectDraft": [LedgerState.DRAFT, LedgerState.READY_TO_SEAL],
    }

    IMMUTABLE: List[LedgerState] = [LedgerState.SEALED, LedgerState.QUARANTINED]


def _state_error(current: LedgerState, message: str) -> LedgerError:
    # Terminal evidence is reported as an immutability conflict, anything
    # else as an illegal transition.
    code = ErrorCode.IMMUTABILITY_CONFLICT if current in LedgerTransitions.IMMUTABLE else ErrorCode.INVALID_TRANSITION
    return LedgerError(code, message, extra={"ledger_state": current.value})


def require_state(record: EvidenceRecord, operation: str) -> None:
    """
    Check that an operation may run from the record's current state.

    Raises:
        LedgerError(IMMUTABILITY_CONFLICT): Record is SEALED or QUARANTINED
        LedgerError(INVALID_TRANSITION): Any other disallowed state
    """
    current = LedgerState(record.ledger_state)
    allowed = LedgerTransitions.OPERATION_SOURCES[operation]
    if current not in allowed:
        raise _state_error(
            current,
            f"{operation} is not allowed for evidence {record.id} in state {current.value}. "
            f"Allowed from: {[s.value for s in allowed]}"
        )


def validate_ledger_transition(current: LedgerState, new: LedgerState, evidence_id: uuid.UUID) -> None:
    """
    Validate a ledger state transition.

    Raises:
        LedgerError: If the transition is not in LedgerTransitions.ALLOWED
    """
    allowed = LedgerTransitions.ALLOWED.get(current, [])
    if new not in allowed:
        raise _state_error(
            current,
            f"Invalid state transition for evidence {evidence_id}: "
            f"{current.value} -> {new.value} not allowed"
        )


def compare_and_swap(
    db: Session,
    tenant_id: str,
    record: EvidenceRecord,
    expected_states: Iterable[LedgerState],
    values: Dict[str, Any]
) -> int:
    """
    Conditionally write a record, bumping its version.

    The UPDATE only matches when tenant, id, state and version are still what
    the caller loaded. Nothing is committed here; the caller owns the
    transaction. The ORM instance is refreshed afterwards.

    Args:
        db: Database session
        tenant_id: Tenant of the caller (always part of the predicate)
        record: Record as loaded by the caller
        expected_states: States the record must still be in
        values: Column values to write

    Returns:
        int: New version

    Raises:
        LedgerError(IMMUTABILITY_CONFLICT): Record became SEALED/QUARANTINED meanwhile
        LedgerError(RETRY_IN_PROGRESS): Record changed concurrently in another way
    """
    expected_states = list(expected_states)
    loaded_version = record.version
    new_state = values.get("ledger_state")
    if new_state is not None:
        validate_ledger_transition(LedgerState(record.ledger_state), LedgerState(new_state), record.id)

    result = db.execute(
        update(EvidenceRecord)
        .where(
            EvidenceRecord.tenant_id == tenant_id,
            EvidenceRecord.id == record.id,
            EvidenceRecord.ledger_state.in_(expected_states),
            EvidenceRecord.version == loaded_version,
        )
        .values(version=EvidenceRecord.version + 1, **values)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        db.refresh(record)
        current = LedgerState(record.ledger_state)
        if current in LedgerTransitions.IMMUTABLE or current not in expected_states:
            raise _state_error(
                current,
                f"Evidence {record.id} is already {current.value}"
            )
        raise LedgerError(
            ErrorCode.RETRY_IN_PROGRESS,
            f"Evidence {record.id} was modified concurrently; retry the request",
            extra={"ledger_state": current.value}
        )

    db.refresh(record)
    return loaded_version + 1
