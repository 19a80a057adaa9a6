"""member import schema

Revision ID: 5c2e71d4a9b3
Revises:
Create Date: 2026-10-19 09:12:40.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "5c2e71d4a9b3"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_companies_code", "companies", ["code"], unique=True)

    op.create_table(
        "members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("username", sa.String(length=100), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("department", sa.String(length=100), nullable=True),
        sa.Column("position", sa.String(length=100), nullable=True),
        sa.Column("shift", sa.String(length=50), nullable=True),
        sa.Column("employee_id", sa.String(length=50), nullable=True),
        sa.Column("person_id", sa.String(length=50), nullable=False),
        sa.Column("worker_type", sa.String(length=20), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("pin_code", sa.String(length=6), nullable=True),
        sa.Column("requires_pin_only", sa.Boolean(), nullable=False),
        sa.Column("login_method", sa.String(length=20), nullable=False),
        sa.Column(
            "manager_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("members.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("company_id", "email", name="uq_member_company_email"),
        sa.UniqueConstraint("company_id", "username", name="uq_member_company_username"),
        sa.UniqueConstraint("company_id", "employee_id", name="uq_member_company_employee_id"),
        sa.UniqueConstraint("company_id", "person_id", name="uq_member_company_person_id"),
        sa.CheckConstraint("role IN ('member','manager','admin')", name="ck_member_role"),
        sa.CheckConstraint("worker_type IN ('office','operational')", name="ck_member_worker_type"),
        sa.CheckConstraint("status IN ('active','inactive','archived')", name="ck_member_status"),
    )
    op.create_index("ix_members_company_id", "members", ["company_id"])

    op.create_table(
        "import_audit_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "actor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("members.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(length=30), nullable=False),
        sa.Column("event_metadata", postgresql.JSONB(), nullable=True),
        sa.Column("change_set", postgresql.JSONB(), nullable=True),
        sa.Column(
            "rolls_back_entry_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("import_audit_entries.id", ondelete="RESTRICT"),
            nullable=True,
            unique=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "action IN ('import_preview','import_execute','import_batch_execute','import_rollback')",
            name="ck_import_audit_action",
        ),
    )
    op.create_index(
        "ix_import_audit_company_created", "import_audit_entries", ["company_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_import_audit_company_created", table_name="import_audit_entries")
    op.drop_table("import_audit_entries")
    op.drop_index("ix_members_company_id", table_name="members")
    op.drop_table("members")
    op.drop_index("ix_companies_code", table_name="companies")
    op.drop_table("companies")
