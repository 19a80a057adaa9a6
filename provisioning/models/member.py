import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from provisioning.core.clock import utcnow
from provisioning.db.base import Base, GUID

ROLES = ("member", "manager", "admin")
MANAGER_ROLES = ("manager", "admin")
WORKER_TYPES = ("office", "operational")

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_ARCHIVED = "archived"

# Fields an import is allowed to rewrite on an existing member
UPDATABLE_FIELDS = (
    "name",
    "email",
    "username",
    "role",
    "department",
    "worker_type",
    "employee_id",
    "position",
    "shift",
)
CREDENTIAL_FIELDS = ("password_hash", "pin_code", "requires_pin_only")


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move member from '{current}' to '{target}'")
        self.current = current
        self.target = target


class Member(Base):
    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("company_id", "email", name="uq_member_company_email"),
        UniqueConstraint("company_id", "username", name="uq_member_company_username"),
        UniqueConstraint("company_id", "employee_id", name="uq_member_company_employee_id"),
        UniqueConstraint("company_id", "person_id", name="uq_member_company_person_id"),
        CheckConstraint("role IN ('member','manager','admin')", name="ck_member_role"),
        CheckConstraint("worker_type IN ('office','operational')", name="ck_member_worker_type"),
        CheckConstraint("status IN ('active','inactive','archived')", name="ck_member_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        GUID, ForeignKey("companies.id", ondelete="CASCADE"), index=True, nullable=False
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")

    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    position: Mapped[str | None] = mapped_column(String(100), nullable=True)
    shift: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Tenant-scoped identifiers
    employee_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    person_id: Mapped[str] = mapped_column(String(50), nullable=False)

    # Office workers log in with a hashed password, operational workers with a PIN
    worker_type: Mapped[str] = mapped_column(String(20), nullable=False, default="office")
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pin_code: Mapped[str | None] = mapped_column(String(6), nullable=True)
    requires_pin_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    login_method: Mapped[str] = mapped_column(String(20), nullable=False, default="email")

    manager_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID, ForeignKey("members.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_ACTIVE)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=sa.func.now(), onupdate=utcnow
    )

    manager = relationship("Member", remote_side=[id])
    company = relationship("Company")

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def _move(self, allowed_from: tuple[str, ...], target: str) -> None:
        if self.status not in allowed_from:
            raise InvalidStatusTransition(self.status, target)
        self.status = target

    def deactivate(self) -> None:
        self._move((STATUS_ACTIVE,), STATUS_INACTIVE)

    def activate(self) -> None:
        self._move((STATUS_INACTIVE,), STATUS_ACTIVE)

    def archive(self) -> None:
        self._move((STATUS_ACTIVE, STATUS_INACTIVE), STATUS_ARCHIVED)

    def restore(self) -> None:
        """Archived members come back inactive; an admin re-activates them explicitly."""
        self._move((STATUS_ARCHIVED,), STATUS_INACTIVE)
