import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Sequence

from provisioning.models.member import UPDATABLE_FIELDS, Member
from provisioning.schemas.imports import (
    CREDENTIAL_FACT_FIELD,
    KEEP_EXISTING,
    CandidateRow,
    ChangeFact,
    Created,
    FieldUpdated,
)
from provisioning.services.directory import DirectoryWriter, manager_identifiers
from provisioning.services.errors import RecordNotFoundError, WeakCredentialError

MASKED = "***"
MASKED_UPDATED = "*** (updated)"


@dataclass
class RowWrite:
    outcome: Literal["created", "updated"]
    record_id: uuid.UUID
    changes: list[ChangeFact] = field(default_factory=list)


def credential_columns(row: CandidateRow, hashed: str | None) -> dict[str, Any]:
    """Column values for the row's credential; empty when the stored one is kept."""
    if not row.password or row.password == KEEP_EXISTING:
        return {}
    if row.worker_type == "operational":
        return {"pin_code": row.password, "password_hash": None, "requires_pin_only": True}
    if hashed is None:
        raise WeakCredentialError("Password could not be hashed")
    return {"password_hash": hashed, "pin_code": None, "requires_pin_only": False}


class TransactionalWriter:
    """
    Writes one row per transaction through a DirectoryWriter. A failing row
    rolls back alone; the caller decides what to do with the exception.
    """

    def __init__(self, directory: DirectoryWriter):
        self.directory = directory

    def write(
        self,
        company_id: uuid.UUID,
        row: CandidateRow,
        hashed: str | None,
        selected_fields: Sequence[str] | None = None,
    ) -> RowWrite:
        with self.directory.transaction():
            if row.action == "update":
                return self._update(company_id, row, hashed, selected_fields)
            return self._create(company_id, row, hashed)

    def _create(self, company_id: uuid.UUID, row: CandidateRow, hashed: str | None) -> RowWrite:
        credentials = credential_columns(row, hashed)
        if not credentials:
            raise WeakCredentialError("Password is required for new members")

        manager_id = None
        if row.has_manager_reference:
            manager = self.directory.find_manager(company_id, manager_identifiers(row))
            manager_id = manager.id if manager is not None else None

        member = self.directory.insert_member(
            company_id,
            {
                "name": row.name,
                "email": row.email,
                "username": row.username,
                "role": row.role,
                "department": row.department,
                "position": row.position,
                "shift": row.shift,
                "employee_id": row.employee_id,
                "person_id": row.person_id,
                "worker_type": row.worker_type,
                "login_method": "email" if row.email else "username",
                "manager_id": manager_id,
                **credentials,
            },
        )
        return RowWrite(outcome="created", record_id=member.id, changes=[Created(record_id=member.id)])

    def _update(
        self,
        company_id: uuid.UUID,
        row: CandidateRow,
        hashed: str | None,
        selected_fields: Sequence[str] | None,
    ) -> RowWrite:
        member: Member | None = None
        if row.existing_id is not None:
            member = self.directory.get_member(company_id, row.existing_id)
        if member is None:
            raise RecordNotFoundError(f"Member not found for update: {row.name}")

        allowed = [f for f in (selected_fields or UPDATABLE_FIELDS) if f in UPDATABLE_FIELDS]
        values: dict[str, Any] = {}
        changes: list[ChangeFact] = []
        for attr in allowed:
            new_value = getattr(row, attr)
            old_value = getattr(member, attr)
            # Blank cells never clear stored values
            if new_value is None or new_value == old_value:
                continue
            values[attr] = new_value
            changes.append(FieldUpdated(record_id=member.id, field=attr, old_value=old_value, new_value=new_value))

        credentials = credential_columns(row, hashed)
        if credentials:
            values.update(credentials)
            changes.append(
                FieldUpdated(
                    record_id=member.id,
                    field=CREDENTIAL_FACT_FIELD,
                    old_value=MASKED,
                    new_value=MASKED_UPDATED,
                )
            )

        if values:
            self.directory.update_member(member, values)
        return RowWrite(outcome="updated", record_id=member.id, changes=changes)
