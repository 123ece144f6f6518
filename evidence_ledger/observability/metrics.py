"""
Ledger metrics.
"""
from __future__ import annotations

import logging

from evidence_ledger.observability.prometheus import Counter, Histogram

logger = logging.getLogger(__name__)

seal_outcomes_total = Counter(
    "ledger_seal_outcomes_total",
    "Seal and resolution outcomes by resulting state or error code",
    labelnames=("outcome",),
)

quarantine_past_due_total = Counter(
    "ledger_quarantine_past_due_total",
    "Quarantines entered after their resolution deadline",
    labelnames=("dataset_type",),
)

idempotency_events_total = Counter(
    "ledger_idempotency_events_total",
    "Idempotency guard decisions",
    labelnames=("operation", "decision"),
)

seal_duration_seconds = Histogram(
    "ledger_seal_duration_seconds",
    "Wall time of the seal transaction",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)


def record_seal_outcome(outcome: str) -> None:
    seal_outcomes_total.inc(outcome=outcome)


def record_past_due_quarantine(dataset_type: str) -> None:
    quarantine_past_due_total.inc(dataset_type=dataset_type)


def record_idempotency(operation: str, decision: str) -> None:
    idempotency_events_total.inc(operation=operation, decision=decision)


def observe_seal_duration(seconds: float) -> None:
    try:
        seal_duration_seconds.observe(seconds)
    except Exception as exc:  # pragma: no cover - observability only
        logger.debug("Failed to record seal duration: %s", exc, exc_info=True)
