import enum
import re
from collections import Counter
from typing import Iterable

from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from provisioning.schemas.imports import CandidateRow, CriticalError, RecoverableError
from provisioning.services.validation import is_credential_message, is_manager_message


class ProvisioningError(Exception):
    """Base class for everything the import engine raises on purpose."""


class MalformedFileError(ProvisioningError):
    """The file is rejected as a whole; no row is parsed."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class WeakCredentialError(ProvisioningError):
    pass


class DuplicateIdentifierError(ProvisioningError):
    pass


class ManagerReferenceError(ProvisioningError):
    pass


class StoreUnavailableError(ProvisioningError):
    pass


class PermissionDeniedError(ProvisioningError):
    pass


class RecordNotFoundError(ProvisioningError):
    pass


class HashingError(ProvisioningError):
    pass


class ImportAborted(ProvisioningError):
    """
    Raised when skip_on_error=False stops a run at its first failing row.
    Rows committed before the failure stay committed; `result` describes them
    and the audit entry recorded for them.
    """

    def __init__(self, result):
        super().__init__(result.message)
        self.result = result


class RollbackRejection(str, enum.Enum):
    NOT_FOUND = "not_found"
    WRONG_TENANT = "wrong_tenant"
    EXPIRED = "expired"
    ALREADY_ROLLED_BACK = "already_rolled_back"


_REJECTION_MESSAGES = {
    RollbackRejection.NOT_FOUND: "Import entry not found",
    RollbackRejection.WRONG_TENANT: "Import entry belongs to another company",
    RollbackRejection.EXPIRED: "Rollback window has expired",
    RollbackRejection.ALREADY_ROLLED_BACK: "Import has already been rolled back",
}


class RollbackRejectedError(ProvisioningError):
    def __init__(self, reason: RollbackRejection):
        super().__init__(_REJECTION_MESSAGES[reason])
        self.reason = reason


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------

FIX_WEAK_CREDENTIAL_OPERATIONAL = "Use 4-6 digit PIN"
FIX_WEAK_CREDENTIAL_OFFICE = "Use 8+ character password with mixed case"
FIX_DUPLICATE = "Use different email, username, or employee ID, or enable update mode"
FIX_MANAGER = "Import manager first, or remove manager reference"
FIX_VALIDATION = "Review data format and required fields"

_STORE_TYPES = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, StoreUnavailableError)
_PERMISSION_TYPES = (PermissionDeniedError, PermissionError)

_PIN_WORD = re.compile(r"\bpin\b")


def _failure_message(exc: BaseException) -> str:
    # DBAPIError's str() embeds the SQL statement, whose column names would
    # trip the keyword patterns below
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc) or exc.__class__.__name__


def _credential_fix(worker_type: str | None) -> str:
    if worker_type == "operational":
        return FIX_WEAK_CREDENTIAL_OPERATIONAL
    return FIX_WEAK_CREDENTIAL_OFFICE


def categorize_error(
    exc: BaseException, row: CandidateRow | None = None, row_index: int = 0
) -> RecoverableError | CriticalError:
    """
    Map a failure raised while writing a row to exactly one error kind.

    Store and permission problems are critical; credential, duplicate and
    manager problems are recoverable with a kind-specific fix; anything else
    is a recoverable validation error carrying the raw message.
    """
    message = _failure_message(exc)
    lowered = message.lower()

    if isinstance(exc, _STORE_TYPES) or "database" in lowered or "connection" in lowered:
        return CriticalError(
            kind="store_unavailable",
            message="Directory store unavailable - contact system administrator",
            row_index=row_index if row is not None else None,
        )
    if isinstance(exc, _PERMISSION_TYPES) or "permission" in lowered or "unauthorized" in lowered:
        return CriticalError(
            kind="permission_denied",
            message="Insufficient permissions to perform this operation",
            row_index=row_index if row is not None else None,
        )
    if isinstance(exc, HashingError):
        return CriticalError(
            kind="internal",
            message=f"Credential hashing failed: {message}",
            row_index=row_index if row is not None else None,
        )

    identity = {
        "row_index": row_index,
        "name": (row.name if row is not None else None) or "Unknown",
        "email": row.email if row is not None else None,
        "username": row.username if row is not None else None,
        "employee_id": row.employee_id if row is not None else None,
        "person_id": row.person_id if row is not None else None,
        "worker_type": row.worker_type if row is not None else None,
    }

    if isinstance(exc, WeakCredentialError) or "password" in lowered or _PIN_WORD.search(lowered):
        return RecoverableError(
            **identity,
            kind="weak_credential",
            message="Credential does not meet policy requirements",
            suggested_fix=_credential_fix(identity["worker_type"]),
        )
    if (
        isinstance(exc, DuplicateIdentifierError)
        or "unique constraint" in lowered
        or "duplicate" in lowered
    ):
        return RecoverableError(
            **identity,
            kind="duplicate",
            message="Member already exists with this identifier",
            suggested_fix=FIX_DUPLICATE,
        )
    if isinstance(exc, ManagerReferenceError) or "manager" in lowered:
        return RecoverableError(
            **identity,
            kind="manager_not_found",
            message="Manager reference could not be resolved",
            suggested_fix=FIX_MANAGER,
        )
    return RecoverableError(**identity, kind="validation", message=message, suggested_fix=FIX_VALIDATION)


def categorize_validation_failure(row: CandidateRow) -> RecoverableError:
    """Recoverable error for a row that never reached the writer because it failed validation."""
    messages = row.validation_errors
    base = {
        "row_index": row.index,
        "name": row.name or "Unknown",
        "email": row.email,
        "username": row.username,
        "employee_id": row.employee_id,
        "person_id": row.person_id,
        "worker_type": row.worker_type,
        "message": "; ".join(messages),
    }
    other = [m for m in messages if not is_credential_message(m) and not is_manager_message(m)]
    if other:
        return RecoverableError(**base, kind="validation", suggested_fix=FIX_VALIDATION)
    if any(is_manager_message(m) for m in messages):
        return RecoverableError(**base, kind="manager_not_found", suggested_fix=FIX_MANAGER)
    return RecoverableError(**base, kind="weak_credential", suggested_fix=_credential_fix(row.worker_type))


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

_RECOMMENDED_ACTIONS = {
    "weak_credential": "Auto-fix available: regenerate a policy compliant credential",
    "duplicate": "Change email, username or employee ID, or enable update mode",
    "manager_not_found": "Import the manager first or remove the manager reference",
    "validation": "Correct the data format and required fields",
}


def get_recommended_action(error: RecoverableError) -> str:
    return _RECOMMENDED_ACTIONS.get(error.kind, "Review and correct the data")


def generate_recommendations(
    recoverable: Iterable[RecoverableError], critical: Iterable[CriticalError]
) -> list[str]:
    recoverable = list(recoverable)
    critical = list(critical)
    counts = Counter(e.kind for e in recoverable)
    recommendations: list[str] = []

    if critical:
        recommendations.append("Critical errors detected - contact system administrator before retrying")
    if counts["weak_credential"]:
        recommendations.append(
            f"Enable auto-fix credentials to resolve {counts['weak_credential']} credential issue(s)"
        )
    if counts["duplicate"]:
        recommendations.append(
            f"Enable update mode or change identifiers for {counts['duplicate']} duplicate member(s)"
        )
    if counts["manager_not_found"]:
        recommendations.append(
            f"Import managers first: {counts['manager_not_found']} member(s) reference unknown managers"
        )
    if counts["validation"]:
        recommendations.append(f"Review data format for {counts['validation']} row(s) with validation errors")
    if len(recoverable) > 10:
        recommendations.append("Consider splitting the file into smaller batches")
    return recommendations
