import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from provisioning.core.clock import utcnow
from provisioning.db.base import Base, GUID, JSONDoc

ACTION_PREVIEW = "import_preview"
ACTION_EXECUTE = "import_execute"
ACTION_BATCH_EXECUTE = "import_batch_execute"
ACTION_ROLLBACK = "import_rollback"

EXECUTE_ACTIONS = (ACTION_EXECUTE, ACTION_BATCH_EXECUTE)


class ImportAuditEntry(Base):
    """
    Append-only journal row. Never updated after insert; a rollback is a new
    row pointing at the entry it undid.
    """

    __tablename__ = "import_audit_entries"
    __table_args__ = (
        CheckConstraint(
            "action IN ('import_preview','import_execute','import_batch_execute','import_rollback')",
            name="ck_import_audit_action",
        ),
        Index("ix_import_audit_company_created", "company_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID, primary_key=True, default=uuid.uuid4)

    company_id: Mapped[uuid.UUID] = mapped_column(
        GUID, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID, ForeignKey("members.id", ondelete="SET NULL"), nullable=True
    )

    action: Mapped[str] = mapped_column(String(30), nullable=False)

    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONDoc, nullable=True)
    # Serialized list of change facts, see provisioning.schemas.imports.change_set_adapter
    change_set: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDoc, nullable=True)

    # Unique: an entry can be rolled back at most once, even under concurrent requests
    rolls_back_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID,
        ForeignKey("import_audit_entries.id", ondelete="RESTRICT"),
        unique=True,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    actor = relationship("Member")
