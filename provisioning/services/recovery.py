"""
Helpers for getting failed rows back into the directory: checking operator
fixes before a retry, proposing automatic fixes and summarizing errors.
"""

from collections import Counter
from typing import Iterable

from provisioning.core.clock import utcnow
from provisioning.models.member import ROLES, WORKER_TYPES
from provisioning.schemas.imports import (
    CandidateRow,
    CriticalError,
    ErrorReport,
    FixValidation,
    InvalidFix,
    RecoverableError,
    RecoverySuggestions,
    ReportedError,
    RowFix,
)
from provisioning.services.errors import generate_recommendations, get_recommended_action
from provisioning.services.hashing import generate_credential
from provisioning.services.parser import LOWERCASE_FIELDS
from provisioning.services.validation import (
    MSG_MISSING_LOGIN,
    MSG_MISSING_NAME_OR_ROLE,
    MSG_MISSING_PERSON_ID,
    credential_problem,
)

FIXABLE_FIELDS = (
    "name",
    "email",
    "username",
    "role",
    "department",
    "position",
    "shift",
    "employee_id",
    "person_id",
    "worker_type",
    "password",
    "manager_email",
    "manager_person_id",
    "manager_employee_id",
)
IDENTIFIER_FIELDS = ("email", "username", "employee_id", "person_id")
MANAGER_FIELDS = ("manager_person_id", "manager_employee_id", "manager_email")

SPLIT_BATCH_ERROR_COUNT = 10


def _normalized(fixes: dict) -> dict:
    # Same normalization the parser applies to these cells
    return {
        field: value.strip().lower() if field in LOWERCASE_FIELDS and isinstance(value, str) else value
        for field, value in fixes.items()
    }


def _fix_problem(error: RecoverableError, fixes: dict) -> str | None:
    fixes = _normalized(fixes)
    unknown = sorted(set(fixes) - set(FIXABLE_FIELDS))
    if unknown:
        return f"Unknown field(s): {', '.join(unknown)}"
    if fixes.get("role") and fixes["role"] not in ROLES:
        return f"Invalid role '{fixes['role']}'"
    if fixes.get("worker_type") and fixes["worker_type"] not in WORKER_TYPES:
        return f"Invalid userType '{fixes['worker_type']}'"

    if error.kind == "weak_credential":
        if "password" not in fixes:
            return "Credential fix must supply a new password or PIN"
        worker_type = fixes.get("worker_type") or error.worker_type or "office"
        return credential_problem(worker_type, fixes["password"])

    if error.kind == "duplicate":
        current = {
            "email": error.email,
            "username": error.username,
            "employee_id": error.employee_id,
            "person_id": error.person_id,
        }
        changed = [f for f in IDENTIFIER_FIELDS if fixes.get(f) and fixes[f] != current.get(f)]
        if not changed:
            return "Duplicate fix must change email, username, employee ID or person ID"
        return None

    if error.kind == "manager_not_found":
        if not any(f in fixes for f in MANAGER_FIELDS):
            return "Manager fix must supply a manager reference or clear it"
        return None

    # validation
    message = error.message
    if MSG_MISSING_NAME_OR_ROLE in message and not (fixes.get("name") or fixes.get("role")):
        return "Fix must supply a name or role"
    if "Invalid role" in message and not fixes.get("role"):
        return "Fix must supply a valid role"
    if MSG_MISSING_LOGIN in message and not (fixes.get("email") or fixes.get("username")):
        return "Fix must supply an email or username"
    if MSG_MISSING_PERSON_ID in message and not fixes.get("person_id"):
        return "Fix must supply a person ID"
    if not any(value not in (None, "") for value in fixes.values()):
        return "Fix does not change any field"
    return None


def validate_fixes(errors: Iterable[RecoverableError], fixes: Iterable[RowFix]) -> FixValidation:
    """
    Check each fix is enough to clear the error recorded for its row. A retry
    is only worth running when at least one fix is valid and none is invalid.
    """
    by_row = {e.row_index: e for e in errors}
    result = FixValidation()
    for fix in fixes:
        error = by_row.get(fix.row_index)
        if error is None:
            result.invalid_fixes.append(
                InvalidFix(row_index=fix.row_index, error="No recoverable error recorded for this row")
            )
            continue
        problem = _fix_problem(error, fix.fixes)
        if problem:
            result.invalid_fixes.append(InvalidFix(row_index=fix.row_index, error=problem))
        else:
            result.valid_fixes.append(fix)
    result.ready_for_retry = not result.invalid_fixes and bool(result.valid_fixes)
    return result


def _suffixed_email(email: str, row_index: int) -> str:
    local, _, domain = email.partition("@")
    return f"{local}+dup{row_index + 1}@{domain}" if domain else f"{email}-dup{row_index + 1}"


def bulk_apply_common_fixes(errors: Iterable[RecoverableError]) -> list[RowFix]:
    """Automatic fixes for the error kinds that have one; validation errors need a person."""
    fixes: list[RowFix] = []
    for error in errors:
        if error.kind == "weak_credential":
            fix = {"password": generate_credential(error.worker_type or "office")}
        elif error.kind == "duplicate" and error.email:
            fix = {"email": _suffixed_email(error.email, error.row_index)}
        elif error.kind == "duplicate" and error.username:
            fix = {"username": f"{error.username}-{error.row_index + 1}"}
        elif error.kind == "manager_not_found":
            fix = {field: None for field in MANAGER_FIELDS}
        else:
            continue
        fixes.append(RowFix(row_index=error.row_index, fixes=fix))
    return fixes


def select_retry_rows(
    rows: list[CandidateRow], errors: Iterable[RecoverableError], fixes: Iterable[RowFix]
) -> list[CandidateRow]:
    """
    Keep only rows whose index has a recoverable error, with that row's fixes
    applied. Resolver and validation output is reset so the rows are
    analyzed afresh.
    """
    wanted = {e.row_index for e in errors}
    patches: dict[int, dict] = {}
    for fix in fixes:
        if fix.row_index in wanted:
            patches.setdefault(fix.row_index, {}).update(fix.fixes)

    selected: list[CandidateRow] = []
    for row in rows:
        if row.index not in wanted:
            continue
        values = {k: v for k, v in _normalized(patches.get(row.index, {})).items() if k in FIXABLE_FIELDS}
        patched = row.model_copy(update={**values, "validation_errors": [], "parse_problems": []}, deep=True)
        selected.append(patched)
    return selected


def generate_recovery_suggestions(errors: Iterable[RecoverableError]) -> RecoverySuggestions:
    errors = list(errors)
    kinds = {e.kind for e in errors}
    return RecoverySuggestions(
        auto_fixable=[e for e in errors if e.kind == "weak_credential"],
        manual_fix_required=[e for e in errors if e.kind != "weak_credential"],
        enable_auto_fix="weak_credential" in kinds,
        enable_update_mode="duplicate" in kinds,
        split_into_smaller_batches=len(errors) > SPLIT_BATCH_ERROR_COUNT,
        import_managers_first="manager_not_found" in kinds,
    )


def generate_error_report(
    recoverable: Iterable[RecoverableError], critical: Iterable[CriticalError]
) -> ErrorReport:
    recoverable = list(recoverable)
    critical = list(critical)
    return ErrorReport(
        timestamp=utcnow(),
        total_recoverable_errors=len(recoverable),
        total_critical_errors=len(critical),
        error_categories=dict(Counter(e.kind for e in recoverable)),
        recoverable_errors=[
            ReportedError(**e.model_dump(), recommended_action=get_recommended_action(e)) for e in recoverable
        ],
        critical_errors=critical,
        recommendations=generate_recommendations(recoverable, critical),
    )
