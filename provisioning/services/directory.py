"""
Tenant-scoped access to the member directory.

The engine only sees the DirectoryReader / DirectoryWriter protocols; the
SQLAlchemy implementation below is what the API and the CLI inject.
"""

import uuid
from contextlib import AbstractContextManager
from typing import Any, Iterable, Protocol

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from provisioning.db.session import transaction
from provisioning.models.member import MANAGER_ROLES, Member
from provisioning.schemas.imports import CandidateRow

# Order matters: the first identifier that matches decides the record
IDENTIFIER_PRIORITY = ("email", "username", "employee_id", "person_id")
MANAGER_IDENTIFIER_PRIORITY = (
    ("manager_person_id", "person_id"),
    ("manager_employee_id", "employee_id"),
    ("manager_email", "email"),
)


class DirectoryReader(Protocol):
    def find_existing(self, company_id: uuid.UUID, identifiers: dict[str, str]) -> Member | None: ...

    def find_manager(self, company_id: uuid.UUID, identifiers: dict[str, str]) -> Member | None: ...


class DirectoryWriter(DirectoryReader, Protocol):
    def transaction(self) -> AbstractContextManager: ...

    def get_member(self, company_id: uuid.UUID, member_id: uuid.UUID) -> Member | None: ...

    def insert_member(self, company_id: uuid.UUID, values: dict[str, Any]) -> Member: ...

    def update_member(self, member: Member, values: dict[str, Any]) -> None: ...

    def delete_members(self, company_id: uuid.UUID, member_ids: Iterable[uuid.UUID]) -> int: ...


def _first_match(candidates: list[Member], identifiers: dict[str, str], priority) -> Member | None:
    for attr in priority:
        wanted = identifiers.get(attr)
        if not wanted:
            continue
        for member in candidates:
            if getattr(member, attr) == wanted:
                return member
    return None


class SqlAlchemyDirectory:
    def __init__(self, db: Session):
        self.db = db

    def _candidates(self, company_id: uuid.UUID, identifiers: dict[str, str], *roles: str) -> list[Member]:
        clauses = [getattr(Member, attr) == value for attr, value in identifiers.items() if value]
        if not clauses:
            return []
        stmt = select(Member).where(Member.company_id == company_id, or_(*clauses))
        if roles:
            stmt = stmt.where(Member.role.in_(roles))
        return list(self.db.execute(stmt).scalars())

    def find_existing(self, company_id: uuid.UUID, identifiers: dict[str, str]) -> Member | None:
        return _first_match(self._candidates(company_id, identifiers), identifiers, IDENTIFIER_PRIORITY)

    def find_manager(self, company_id: uuid.UUID, identifiers: dict[str, str]) -> Member | None:
        candidates = self._candidates(company_id, identifiers, *MANAGER_ROLES)
        return _first_match(candidates, identifiers, [attr for _, attr in MANAGER_IDENTIFIER_PRIORITY])

    def transaction(self) -> AbstractContextManager:
        return transaction(self.db)

    def get_member(self, company_id: uuid.UUID, member_id: uuid.UUID) -> Member | None:
        stmt = select(Member).where(Member.company_id == company_id, Member.id == member_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def insert_member(self, company_id: uuid.UUID, values: dict[str, Any]) -> Member:
        member = Member(id=uuid.uuid4(), company_id=company_id, **values)
        self.db.add(member)
        self.db.flush()
        return member

    def update_member(self, member: Member, values: dict[str, Any]) -> None:
        for attr, value in values.items():
            setattr(member, attr, value)
        self.db.flush()

    def delete_members(self, company_id: uuid.UUID, member_ids: Iterable[uuid.UUID]) -> int:
        ids = list(member_ids)
        if not ids:
            return 0
        result = self.db.execute(
            delete(Member)
            .where(Member.company_id == company_id, Member.id.in_(ids))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0


def row_identifiers(row: CandidateRow) -> dict[str, str]:
    return {attr: getattr(row, attr) for attr in IDENTIFIER_PRIORITY if getattr(row, attr)}


def manager_identifiers(row: CandidateRow) -> dict[str, str]:
    return {
        member_attr: getattr(row, row_attr)
        for row_attr, member_attr in MANAGER_IDENTIFIER_PRIORITY
        if getattr(row, row_attr)
    }


def resolve_row(directory: DirectoryReader, company_id: uuid.UUID, row: CandidateRow) -> None:
    """Classify the row as create/update and check its manager reference. Reads only."""
    identifiers = row_identifiers(row)
    existing = directory.find_existing(company_id, identifiers) if identifiers else None
    if existing is not None:
        row.action = "update"
        row.existing_id = existing.id
    else:
        row.action = "create"
        row.existing_id = None

    if row.has_manager_reference:
        row.manager_found = directory.find_manager(company_id, manager_identifiers(row)) is not None
    else:
        row.manager_found = True
