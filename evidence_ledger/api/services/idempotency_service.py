"""
Idempotency guard for mutating ledger operations.

A key is claimed by committing an IN_PROGRESS row, unique on
(tenant_id, idempotency_key), before any side effect runs. The operation's
own writes and the SUCCEEDED completion then commit in one transaction, so a
stored response always describes a change that actually happened.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi.responses import JSONResponse
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from evidence_ledger.api.core.config import settings
from evidence_ledger.api.core.errors import ErrorCode, FieldError, LedgerError, validation_failed
from evidence_ledger.api.core.logging import logger
from evidence_ledger.api.core.security import RequestContext
from evidence_ledger.api.models.idempotency_record import IdempotencyRecord, IdempotencyStatus
from evidence_ledger.api.utils.hashing import hash_canonical, unencodable_paths
from evidence_ledger.observability.metrics import record_idempotency


@dataclass(frozen=True)
class IdempotentResponse:
    status_code: int
    body: Dict[str, Any]
    replayed: bool = False

    def to_response(self) -> JSONResponse:
        headers = {"Idempotent-Replayed": "true"} if self.replayed else None
        return JSONResponse(status_code=self.status_code, content=self.body, headers=headers)


class IdempotencyGuard:
    """Request fingerprint store with replay and conflict detection."""

    @staticmethod
    def fingerprint(
        operation: str,
        actor_user_id: str,
        body: Dict[str, Any],
        target_id: Optional[str] = None,
        payload_size_bytes: Optional[int] = None,
        payload_content_type: Optional[str] = None
    ) -> str:
        """
        SHA-256 over the normalized request.

        Args:
            operation: Operation name (createDraft, seal, ...)
            actor_user_id: Authenticated actor
            body: Normalized request body (JSON-compatible, None values dropped)
            target_id: Evidence id the operation acts on, if any
            payload_size_bytes: Declared payload size (attachPayload)
            payload_content_type: Declared payload content type (attachPayload)

        Returns:
            str: 64-character hex digest

        Raises:
            LedgerError(VALIDATION_FAILED): Body holds text that is not valid UTF-8
        """
        bad_paths = unencodable_paths(body)
        if bad_paths:
            raise validation_failed(
                [FieldError(path, "must be valid UTF-8 text") for path in dict.fromkeys(bad_paths)]
            )
        return hash_canonical({
            "operation": operation,
            "actor_user_id": actor_user_id,
            "target_id": target_id,
            "body": body,
            "payload_size_bytes": payload_size_bytes,
            "payload_content_type": payload_content_type,
        })

    @staticmethod
    def begin(
        db: Session,
        tenant_id: str,
        key: str,
        operation: str,
        fingerprint: str,
        actor_user_id: str
    ) -> Optional[IdempotentResponse]:
        """
        Claim an idempotency key.

        Returns:
            None if the caller should execute the operation, or the stored
            response when this is a replay of a completed request.

        Raises:
            LedgerError(IDEMPOTENCY_CONFLICT): Key reused for a different request
            LedgerError(RETRY_IN_PROGRESS): Same request is still executing (its
                claim is younger than IDEMPOTENCY_STALE_SECONDS)
        """
        db.add(IdempotencyRecord(
            tenant_id=tenant_id,
            idempotency_key=key,
            operation=operation,
            request_fingerprint=fingerprint,
            actor_user_id=actor_user_id,
            status=IdempotencyStatus.IN_PROGRESS,
            attempts=1,
            claimed_at=datetime.now(timezone.utc)
        ))
        try:
            db.commit()
            return None
        except IntegrityError:
            db.rollback()

        existing = (
            db.query(IdempotencyRecord)
            .filter(IdempotencyRecord.tenant_id == tenant_id, IdempotencyRecord.idempotency_key == key)
            .first()
        )
        if existing is None:
            # Unique violation but no visible row: the claim raced with us
            raise _retry_in_progress(key)

        if existing.request_fingerprint != fingerprint:
            record_idempotency(operation, "conflict")
            logger.warning(
                f"Idempotency conflict tenant={tenant_id} key={key} "
                f"stored_operation={existing.operation} operation={operation}"
            )
            raise LedgerError(
                ErrorCode.IDEMPOTENCY_CONFLICT,
                "Idempotency-Key was already used for a different request",
                extra={"idempotency_key": key, "original_operation": existing.operation}
            )

        status = IdempotencyStatus(existing.status)
        if status == IdempotencyStatus.SUCCEEDED:
            record_idempotency(operation, "replayed")
            return IdempotentResponse(
                status_code=existing.response_status_code,
                body=existing.response_body,
                replayed=True
            )

        if status == IdempotencyStatus.IN_PROGRESS:
            if not _claim_is_stale(existing):
                record_idempotency(operation, "in_progress")
                raise _retry_in_progress(key)
            # The claiming process died before completing; its writes never committed
            logger.warning(
                f"Reclaiming stale idempotency key tenant={tenant_id} key={key} "
                f"operation={operation} claimed_at={existing.claimed_at} attempts={existing.attempts}"
            )

        # FAILED or abandoned: no side effects were committed, so re-arm and run again
        result = db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.id == existing.id,
                IdempotencyRecord.tenant_id == tenant_id,
                IdempotencyRecord.status == status,
                IdempotencyRecord.attempts == existing.attempts,
            )
            .values(
                status=IdempotencyStatus.IN_PROGRESS,
                attempts=IdempotencyRecord.attempts + 1,
                claimed_at=datetime.now(timezone.utc),
                response_status_code=None,
                response_body=None,
                completed_at=None
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            raise _retry_in_progress(key)
        record_idempotency(operation, "retried" if status == IdempotencyStatus.FAILED else "reclaimed")
        return None

    @staticmethod
    def complete(
        db: Session,
        tenant_id: str,
        key: str,
        status: IdempotencyStatus,
        status_code: int,
        body: Dict[str, Any]
    ) -> None:
        """
        Finalize a claimed key with the response to replay. Not committed here.
        """
        db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.tenant_id == tenant_id,
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.status == IdempotencyStatus.IN_PROGRESS,
            )
            .values(
                status=status,
                response_status_code=status_code,
                response_body=body,
                completed_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )


def _claim_is_stale(record: IdempotencyRecord) -> bool:
    claimed_at = record.claimed_at
    if claimed_at.tzinfo is None:
        # SQLite returns naive UTC timestamps
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - claimed_at > timedelta(seconds=settings.IDEMPOTENCY_STALE_SECONDS)


def _retry_in_progress(key: str) -> LedgerError:
    return LedgerError(
        ErrorCode.RETRY_IN_PROGRESS,
        "A request with this Idempotency-Key is still in progress; retry later",
        extra={"idempotency_key": key},
        headers={"Retry-After": str(settings.RETRY_AFTER_SECONDS)}
    )


def run_idempotent(
    db: Session,
    ctx: RequestContext,
    operation: str,
    fingerprint: str,
    execute: Callable[[], Tuple[int, Dict[str, Any]]]
) -> IdempotentResponse:
    """
    Execute a mutating operation at most once per idempotency key.

    ``execute`` performs the operation without committing and returns
    ``(status_code, body)``. Its writes and the SUCCEEDED completion commit
    together. Ledger errors mark the key FAILED and propagate unchanged; any
    other exception marks it FAILED and surfaces as SYSTEM_ERROR.
    """
    tenant_id = ctx.tenant_id
    key = ctx.idempotency_key

    replay = IdempotencyGuard.begin(db, tenant_id, key, operation, fingerprint, ctx.identity.user_id)
    if replay is not None:
        logger.info(f"Replaying {operation} tenant={tenant_id} key={key} correlation_id={ctx.correlation_id}")
        return replay

    try:
        status_code, body = execute()
        IdempotencyGuard.complete(db, tenant_id, key, IdempotencyStatus.SUCCEEDED, status_code, body)
        db.commit()
    except LedgerError as e:
        db.rollback()
        _mark_failed(db, tenant_id, key, e.status_code, e.to_body(ctx.correlation_id))
        raise
    except Exception as e:
        db.rollback()
        logger.error(
            f"{operation} failed tenant={tenant_id} key={key} correlation_id={ctx.correlation_id}: {e}",
            exc_info=True
        )
        error = LedgerError(ErrorCode.SYSTEM_ERROR, f"{operation} failed; contact support with the correlation id")
        _mark_failed(db, tenant_id, key, error.status_code, error.to_body(ctx.correlation_id))
        raise error from e

    return IdempotentResponse(status_code=status_code, body=body)


def _mark_failed(db: Session, tenant_id: str, key: str, status_code: int, body: Dict[str, Any]) -> None:
    try:
        IdempotencyGuard.complete(db, tenant_id, key, IdempotencyStatus.FAILED, status_code, body)
        db.commit()
    except Exception as e:
        db.rollback()
        # The key stays IN_PROGRESS; retries will get RETRY_IN_PROGRESS
        logger.error(f"Could not mark idempotency key {key} as FAILED: {e}", exc_info=True)
