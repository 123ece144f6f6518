"""
Declaration rules - the single validation pass for evidence declarations.

validate_declaration() never raises for caller mistakes. It returns either a
ValidatedDeclaration or a ValidationFailed carrying every field problem at
once, so callers get the complete list in one response.

Order of checks:
1. Field-level checks (required, formats, conditional fields) -> VALIDATION_FAILED
2. Method x dataset matrix -> UNSUPPORTED_METHOD_DATASET_COMBINATION
3. Dataset x scope rules -> DATASET_SCOPE_INCOMPATIBLE
"""
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Type, Union
import enum

from evidence_ledger.api.core.config import settings
from evidence_ledger.api.core.errors import ErrorCode, FieldError, LedgerError
from evidence_ledger.api.models.evidence_record import (
    DatasetType,
    DeclaredScope,
    EvidenceRecord,
    IngestionMethod,
    RetentionPolicy,
    ReviewStatus,
    SourceSystem,
    TrustLevel,
)

M = IngestionMethod
D = DatasetType
S = DeclaredScope

# Which ingestion methods may carry which dataset types.
# Certificates and test reports must come from a file or the supplier portal.
METHOD_DATASET_MATRIX: Dict[DatasetType, FrozenSet[IngestionMethod]] = {
    D.SUPPLIER_MASTER: frozenset({M.MANUAL_ENTRY, M.FILE_UPLOAD, M.ERP_EXPORT, M.ERP_API, M.API_PUSH}),
    D.PRODUCT_MASTER: frozenset({M.MANUAL_ENTRY, M.FILE_UPLOAD, M.ERP_EXPORT, M.ERP_API, M.API_PUSH}),
    D.BOM: frozenset({M.MANUAL_ENTRY, M.FILE_UPLOAD, M.ERP_EXPORT, M.ERP_API, M.API_PUSH}),
    D.CERTIFICATE: frozenset({M.FILE_UPLOAD, M.SUPPLIER_PORTAL}),
    D.TEST_REPORT: frozenset({M.FILE_UPLOAD, M.SUPPLIER_PORTAL}),
    D.TRANSACTION_LOG: frozenset({M.API_PUSH, M.FILE_UPLOAD, M.ERP_EXPORT, M.ERP_API}),
}

DATASET_SCOPE_RULES: Dict[DatasetType, FrozenSet[DeclaredScope]] = {
    D.SUPPLIER_MASTER: frozenset({S.ENTIRE_ORGANIZATION, S.LEGAL_ENTITY, S.UNKNOWN}),
    D.PRODUCT_MASTER: frozenset({S.ENTIRE_ORGANIZATION, S.LEGAL_ENTITY, S.PRODUCT_FAMILY, S.UNKNOWN}),
    D.BOM: frozenset({S.LEGAL_ENTITY, S.PRODUCT_FAMILY, S.SITE, S.UNKNOWN}),
    D.CERTIFICATE: frozenset({S.LEGAL_ENTITY, S.SITE, S.PRODUCT_FAMILY, S.UNKNOWN}),
    D.TEST_REPORT: frozenset({S.LEGAL_ENTITY, S.SITE, S.PRODUCT_FAMILY, S.UNKNOWN}),
    D.TRANSACTION_LOG: frozenset(S),
}

_ERP_SYSTEMS = (
    SourceSystem.SAP,
    SourceSystem.MICROSOFT_DYNAMICS,
    SourceSystem.ODOO,
    SourceSystem.ORACLE,
    SourceSystem.NETSUITE,
)

# Methods whose source system is fixed by the server
FORCED_SOURCE_SYSTEM: Dict[IngestionMethod, SourceSystem] = {
    M.MANUAL_ENTRY: SourceSystem.INTERNAL_MANUAL,
    M.SUPPLIER_PORTAL: SourceSystem.SUPPLIER_PORTAL,
}

ALLOWED_SOURCE_SYSTEMS: Dict[IngestionMethod, Tuple[SourceSystem, ...]] = {
    M.FILE_UPLOAD: (SourceSystem.OTHER,) + _ERP_SYSTEMS,
    M.API_PUSH: (SourceSystem.OTHER,) + _ERP_SYSTEMS,
    M.ERP_EXPORT: (SourceSystem.OTHER,) + _ERP_SYSTEMS,
    M.ERP_API: _ERP_SYSTEMS,
}

REQUIRED_REFERENCES: Dict[IngestionMethod, Tuple[str, ...]] = {
    M.API_PUSH: ("external_reference_id",),
    M.ERP_EXPORT: ("snapshot_datetime_utc", "export_job_id"),
    M.ERP_API: ("snapshot_datetime_utc", "connector_reference"),
    M.SUPPLIER_PORTAL: ("supplier_portal_request_id",),
}

TARGETED_SCOPES = (S.LEGAL_ENTITY, S.SITE, S.PRODUCT_FAMILY)

SCOPE_FIELDS = (
    "declared_scope",
    "scope_target_id",
    "scope_target_name",
    "quarantine_reason",
    "resolution_deadline",
)
PROVENANCE_FIELDS = ("ingestion_method", "dataset_type", "source_system")

REFERENCE_FIELDS = (
    "external_reference_id",
    "snapshot_datetime_utc",
    "export_job_id",
    "connector_reference",
    "supplier_portal_request_id",
)

# Declaration fields that only ever hold free text or enum names
TEXT_FIELDS = (
    "ingestion_method",
    "dataset_type",
    "source_system",
    "declared_scope",
    "scope_target_id",
    "scope_target_name",
    "quarantine_reason",
    "primary_intent",
    "gdpr_legal_basis",
    "entry_notes",
    "retention_policy",
) + REFERENCE_FIELDS

MIN_QUARANTINE_REASON_LENGTH = 30
MIN_ENTRY_NOTES_LENGTH = 20
MAX_CUSTOM_RETENTION_DAYS = 3650

PLACEHOLDER_VALUES = frozenset({"test", "asdf", "xxx", "-", "n/a", "tbd"})

RETENTION_PENDING_DISPLAY = "Pending (computed at seal)"


@dataclass(frozen=True)
class ValidatedDeclaration:
    """A declaration that passed every rule. Source system already resolved."""
    ingestion_method: IngestionMethod
    dataset_type: DatasetType
    source_system: SourceSystem
    declared_scope: DeclaredScope
    primary_intent: str
    purpose_tags: List[str]
    contains_personal_data: bool
    retention_policy: RetentionPolicy
    scope_target_id: Optional[str] = None
    scope_target_name: Optional[str] = None
    quarantine_reason: Optional[str] = None
    resolution_deadline: Optional[date] = None
    gdpr_legal_basis: Optional[str] = None
    entry_notes: Optional[str] = None
    retention_custom_days: Optional[int] = None
    external_reference_id: Optional[str] = None
    snapshot_datetime_utc: Optional[str] = None
    export_job_id: Optional[str] = None
    connector_reference: Optional[str] = None
    supplier_portal_request_id: Optional[str] = None

    def column_values(self) -> Dict[str, Any]:
        """Values ready to be written onto an EvidenceRecord."""
        values = asdict(self)
        for key, value in values.items():
            if isinstance(value, enum.Enum):
                values[key] = value.value
        values["purpose_tags"] = list(self.purpose_tags)
        return values


@dataclass(frozen=True)
class ValidationFailed:
    """Rejected declaration."""
    error_code: str
    message: str
    field_errors: List[FieldError] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> LedgerError:
        return LedgerError(self.error_code, self.message, field_errors=self.field_errors, extra=self.extra)


DeclarationResult = Union[ValidatedDeclaration, ValidationFailed]


def _text(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _type_errors(data: Dict[str, Any]) -> List[FieldError]:
    errors = []
    for key in TEXT_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(FieldError(key, "must be a string"))

    deadline = data.get("resolution_deadline")
    if deadline is not None and not isinstance(deadline, (str, date)):
        errors.append(FieldError("resolution_deadline", "must be an ISO date (YYYY-MM-DD)"))

    tags = data.get("purpose_tags")
    if tags is not None and not (isinstance(tags, (list, tuple)) and all(isinstance(t, str) for t in tags)):
        errors.append(FieldError("purpose_tags", "must be a list of strings"))

    flag = data.get("contains_personal_data")
    if flag is not None and not isinstance(flag, bool):
        errors.append(FieldError("contains_personal_data", "must be explicitly true or false"))

    days = data.get("retention_custom_days")
    if days is not None and (isinstance(days, bool) or not isinstance(days, int)):
        errors.append(FieldError("retention_custom_days", "must be a whole number of days"))
    return errors


def _enum(data: Dict[str, Any], key: str, enum_cls: Type[enum.Enum], errors: List[FieldError]):
    raw = _text(data, key)
    if raw is None:
        errors.append(FieldError(key, "is required"))
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        errors.append(FieldError(key, f"must be one of: {allowed}"))
        return None


def _parse_date(raw: Any) -> Optional[date]:
    if isinstance(raw, date) and not isinstance(raw, datetime):
        return raw
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        return None


def _parse_utc_datetime(raw: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def validate_declaration(
    data: Dict[str, Any],
    today: date,
    check_deadline_window: bool = True
) -> DeclarationResult:
    """
    Validate a declaration in one pass.

    Args:
        data: Declaration fields as submitted (caller-supplied trust level,
            review status, hashes or tenant ids are never read)
        today: Server date (UTC) used for the quarantine deadline window
        check_deadline_window: False when re-validating an existing draft,
            whose deadline was checked at creation

    Returns:
        ValidatedDeclaration or ValidationFailed
    """
    type_errors = _type_errors(data)
    errors: List[FieldError] = []

    method = _enum(data, "ingestion_method", IngestionMethod, errors)
    dataset = _enum(data, "dataset_type", DatasetType, errors)
    scope = _enum(data, "declared_scope", DeclaredScope, errors)
    retention = _enum(data, "retention_policy", RetentionPolicy, errors)

    primary_intent = _text(data, "primary_intent")
    if primary_intent is None:
        errors.append(FieldError("primary_intent", "is required"))

    raw_tags = data.get("purpose_tags")
    purpose_tags: List[str] = []
    if not isinstance(raw_tags, (list, tuple)) or not raw_tags:
        errors.append(FieldError("purpose_tags", "at least one purpose tag is required"))
    else:
        purpose_tags = [str(t).strip() for t in raw_tags if str(t).strip()]
        if len(purpose_tags) != len(raw_tags):
            errors.append(FieldError("purpose_tags", "tags must be non-empty strings"))

    contains_personal_data = data.get("contains_personal_data")
    gdpr_legal_basis = _text(data, "gdpr_legal_basis")
    if not isinstance(contains_personal_data, bool):
        errors.append(FieldError("contains_personal_data", "must be explicitly true or false"))
    elif contains_personal_data and gdpr_legal_basis is None:
        errors.append(FieldError("gdpr_legal_basis", "is required when contains_personal_data is true"))

    custom_days = data.get("retention_custom_days")
    if retention == RetentionPolicy.CUSTOM:
        if isinstance(custom_days, bool) or not isinstance(custom_days, int):
            errors.append(FieldError("retention_custom_days", "is required for CUSTOM retention"))
        elif not 1 <= custom_days <= MAX_CUSTOM_RETENTION_DAYS:
            errors.append(FieldError(
                "retention_custom_days",
                f"must be between 1 and {MAX_CUSTOM_RETENTION_DAYS} days"
            ))
    else:
        custom_days = None

    # Scope binding
    scope_target_id = _text(data, "scope_target_id")
    scope_target_name = _text(data, "scope_target_name")
    quarantine_reason = None
    resolution_deadline = None
    if scope in TARGETED_SCOPES and scope_target_id is None:
        errors.append(FieldError("scope_target_id", f"is required for {scope.value} scope"))
    elif scope in (S.ENTIRE_ORGANIZATION, S.UNKNOWN) and scope_target_id is not None:
        errors.append(FieldError("scope_target_id", f"must not be set for {scope.value} scope"))

    if scope == S.UNKNOWN:
        quarantine_reason = _text(data, "quarantine_reason")
        if quarantine_reason is None or len(quarantine_reason) < MIN_QUARANTINE_REASON_LENGTH:
            errors.append(FieldError(
                "quarantine_reason",
                f"must be at least {MIN_QUARANTINE_REASON_LENGTH} characters when scope is UNKNOWN"
            ))

        raw_deadline = data.get("resolution_deadline")
        resolution_deadline = _parse_date(raw_deadline) if raw_deadline not in (None, "") else None
        if raw_deadline in (None, ""):
            errors.append(FieldError("resolution_deadline", "is required when scope is UNKNOWN"))
        elif resolution_deadline is None:
            errors.append(FieldError("resolution_deadline", "must be an ISO date (YYYY-MM-DD)"))
        elif check_deadline_window:
            earliest = today + timedelta(days=1)
            latest = today + timedelta(days=settings.QUARANTINE_MAX_DAYS)
            if not earliest <= resolution_deadline <= latest:
                errors.append(FieldError(
                    "resolution_deadline",
                    f"must be between {earliest.isoformat()} and {latest.isoformat()}"
                ))

    # Method-specific requirements
    entry_notes = _text(data, "entry_notes")
    references = {key: _text(data, key) for key in REFERENCE_FIELDS}
    if method == M.MANUAL_ENTRY:
        if entry_notes is None or len(entry_notes) < MIN_ENTRY_NOTES_LENGTH:
            errors.append(FieldError(
                "entry_notes",
                f"must be at least {MIN_ENTRY_NOTES_LENGTH} characters for MANUAL_ENTRY"
            ))
    for key in REQUIRED_REFERENCES.get(method, ()):
        if references[key] is None:
            errors.append(FieldError(key, f"is required for {method.value}"))
    snapshot = references["snapshot_datetime_utc"]
    if snapshot is not None and _parse_utc_datetime(snapshot) is None:
        errors.append(FieldError("snapshot_datetime_utc", "must be an ISO 8601 datetime"))

    # Source system
    source_system = None
    if method in FORCED_SOURCE_SYSTEM:
        source_system = FORCED_SOURCE_SYSTEM[method]
    elif method is not None:
        allowed_systems = ALLOWED_SOURCE_SYSTEMS[method]
        raw_system = _text(data, "source_system")
        if raw_system is None:
            errors.append(FieldError("source_system", f"is required for {method.value}"))
        elif raw_system not in {s.value for s in allowed_systems}:
            errors.append(FieldError(
                "source_system",
                f"must be one of: {', '.join(s.value for s in allowed_systems)}"
            ))
        else:
            source_system = SourceSystem(raw_system)

    # A mistyped field is reported once, as a type error
    mistyped = {e.field for e in type_errors}
    errors = type_errors + [e for e in errors if e.field not in mistyped]
    if errors:
        return ValidationFailed(
            ErrorCode.VALIDATION_FAILED,
            f"Declaration has {len(errors)} invalid or missing field(s)",
            field_errors=errors
        )

    allowed_methods = METHOD_DATASET_MATRIX[dataset]
    if method not in allowed_methods:
        return ValidationFailed(
            ErrorCode.UNSUPPORTED_METHOD_DATASET_COMBINATION,
            f"{method.value} cannot be used to ingest {dataset.value}",
            extra={"allowed_methods": sorted(m.value for m in allowed_methods)}
        )

    allowed_scopes = DATASET_SCOPE_RULES[dataset]
    if scope not in allowed_scopes:
        return ValidationFailed(
            ErrorCode.DATASET_SCOPE_INCOMPATIBLE,
            f"{dataset.value} cannot be scoped to {scope.value}",
            extra={"allowed_scopes": sorted(s.value for s in allowed_scopes)}
        )

    return ValidatedDeclaration(
        ingestion_method=method,
        dataset_type=dataset,
        source_system=source_system,
        declared_scope=scope,
        primary_intent=primary_intent,
        purpose_tags=purpose_tags,
        contains_personal_data=contains_personal_data,
        retention_policy=retention,
        scope_target_id=scope_target_id,
        scope_target_name=scope_target_name,
        quarantine_reason=quarantine_reason,
        resolution_deadline=resolution_deadline,
        gdpr_legal_basis=gdpr_legal_basis,
        entry_notes=entry_notes,
        retention_custom_days=custom_days,
        **references
    )


def declaration_from_record(record: EvidenceRecord) -> Dict[str, Any]:
    """Current declaration of a stored record, in validate_declaration() input shape."""
    data = {key: getattr(record, key) for key in PROVENANCE_FIELDS + SCOPE_FIELDS + REFERENCE_FIELDS}
    data.update(
        primary_intent=record.primary_intent,
        purpose_tags=list(record.purpose_tags or []),
        contains_personal_data=record.contains_personal_data,
        gdpr_legal_basis=record.gdpr_legal_basis,
        entry_notes=record.entry_notes,
        retention_policy=record.retention_policy,
        retention_custom_days=record.retention_custom_days,
    )
    return data


def derive_trust_level(method: IngestionMethod) -> TrustLevel:
    """Trust follows provenance only: verified system pulls rank highest, manual entry lowest."""
    if method == M.MANUAL_ENTRY:
        return TrustLevel.LOW
    if method in (M.ERP_API, M.SUPPLIER_PORTAL):
        return TrustLevel.HIGH
    return TrustLevel.MEDIUM


def derive_review_status(method: IngestionMethod) -> ReviewStatus:
    if method == M.MANUAL_ENTRY:
        return ReviewStatus.PENDING_REVIEW
    return ReviewStatus.APPROVED


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February -> 28 February
        return moment.replace(year=moment.year + years, day=28)


def compute_retention_ends_at(
    policy: str,
    custom_days: Optional[int],
    sealed_at: datetime
) -> datetime:
    """
    Retention end derived from the policy and the seal timestamp.

    Raises:
        LedgerError(VALIDATION_FAILED): CUSTOM policy without a day count
    """
    policy = RetentionPolicy(policy)
    if policy == RetentionPolicy.STANDARD_1_YEAR:
        return _add_years(sealed_at, 1)
    if policy == RetentionPolicy.THREE_YEARS:
        return _add_years(sealed_at, 3)
    if policy == RetentionPolicy.SEVEN_YEARS:
        return _add_years(sealed_at, 7)
    if not custom_days:
        raise LedgerError(
            ErrorCode.VALIDATION_FAILED,
            "CUSTOM retention requires retention_custom_days",
            field_errors=[FieldError("retention_custom_days", "is required for CUSTOM retention")]
        )
    return sealed_at + timedelta(days=custom_days)


def retention_display(record: EvidenceRecord) -> str:
    """Human readable retention end; never a sentinel like N/A."""
    if record.retention_ends_at is None:
        return RETENTION_PENDING_DISPLAY
    return record.retention_ends_at.isoformat()


def find_placeholder_values(payload: Any, path: str = "") -> List[str]:
    """
    Key paths whose value is a placeholder string (test, tbd, n/a, ...).

    Nested objects are walked with dotted paths, list items with [index].
    """
    found: List[str] = []
    if isinstance(payload, dict):
        for key, value in payload.items():
            found.extend(find_placeholder_values(value, f"{path}.{key}" if path else str(key)))
    elif isinstance(payload, list):
        for index, value in enumerate(payload):
            found.extend(find_placeholder_values(value, f"{path}[{index}]"))
    elif isinstance(payload, str) and payload.strip().lower() in PLACEHOLDER_VALUES:
        found.append(path)
    return found
