import re

from provisioning.models.member import ROLES, WORKER_TYPES
from provisioning.schemas.imports import KEEP_EXISTING, CandidateRow

MSG_MISSING_NAME_OR_ROLE = "Missing name or role"
MSG_MISSING_LOGIN = "Missing email or username"
MSG_MISSING_PERSON_ID = "Missing personID (national ID)"

MSG_PASSWORD_REQUIRED = "Password is required"
MSG_PIN_FORMAT = "Operational user PIN must be 4-6 digits"
MSG_PASSWORD_LENGTH = "Password must be at least 8 characters"

CREDENTIAL_MESSAGES = (MSG_PASSWORD_REQUIRED, MSG_PIN_FORMAT, MSG_PASSWORD_LENGTH)

MANAGER_NOT_FOUND_PREFIX = "Manager not found"

MIN_PASSWORD_LENGTH = 8
PIN_PATTERN = re.compile(r"^\d{4,6}$")


def is_credential_message(message: str) -> bool:
    return message in CREDENTIAL_MESSAGES


def is_manager_message(message: str) -> bool:
    return message.startswith(MANAGER_NOT_FOUND_PREFIX)


def credential_problem(worker_type: str, credential: str | None, *, allow_keep: bool = False) -> str | None:
    """Return the policy message a credential violates, or None when it is acceptable."""
    if not credential or credential == KEEP_EXISTING:
        return None if allow_keep else MSG_PASSWORD_REQUIRED
    if worker_type == "operational":
        if not PIN_PATTERN.match(credential):
            return MSG_PIN_FORMAT
    elif len(credential) < MIN_PASSWORD_LENGTH:
        return MSG_PASSWORD_LENGTH
    return None


def validate_required_fields(row: CandidateRow) -> list[str]:
    errors: list[str] = list(row.parse_problems)

    if not row.name or not row.role:
        errors.append(MSG_MISSING_NAME_OR_ROLE)
    elif row.role not in ROLES:
        errors.append(f"Invalid role '{row.role}' (must be member, manager, or admin)")

    if not row.email and not row.username:
        errors.append(MSG_MISSING_LOGIN)
    if not row.person_id:
        errors.append(MSG_MISSING_PERSON_ID)
    if row.worker_type not in WORKER_TYPES:
        errors.append(f"Invalid userType '{row.worker_type}' (must be office or operational)")
    return errors


def validate_credential(row: CandidateRow) -> list[str]:
    # A blank cell or KEEP_EXISTING only makes sense against a stored credential
    problem = credential_problem(row.worker_type, row.password, allow_keep=row.action == "update")
    return [problem] if problem else []


def manager_not_found_message(row: CandidateRow) -> str:
    if row.manager_person_id:
        return f"{MANAGER_NOT_FOUND_PREFIX} with PersonID: {row.manager_person_id}"
    if row.manager_employee_id:
        return f"{MANAGER_NOT_FOUND_PREFIX} with EmployeeID: {row.manager_employee_id}"
    return f"{MANAGER_NOT_FOUND_PREFIX} with email: {row.manager_email}"


def validate_row(row: CandidateRow) -> list[str]:
    """
    Ordered validation messages for a resolved row: parse problems and
    required fields, then the manager reference, then the credential policy.

    Pure: the same row always yields the same list.
    """
    errors = validate_required_fields(row)
    if row.has_manager_reference and not row.manager_found:
        errors.append(manager_not_found_message(row))
    errors.extend(validate_credential(row))
    return errors
