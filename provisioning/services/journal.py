import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session, selectinload

from provisioning.core.clock import as_utc, utcnow
from provisioning.models.import_audit import (
    ACTION_PREVIEW,
    ACTION_ROLLBACK,
    EXECUTE_ACTIONS,
    ImportAuditEntry,
)
from provisioning.schemas.imports import (
    ChangeFact,
    HistoryItem,
    ImportStatistics,
    LargestImport,
    change_set_adapter,
)

logger = logging.getLogger(__name__)


class AuditJournal:
    """
    Append-only import journal for one database session.

    `record` only adds and flushes; committing is up to the caller so an
    entry can share a transaction with the writes it describes.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        *,
        company_id: uuid.UUID,
        actor_id: uuid.UUID | None,
        action: str,
        metadata: dict[str, Any],
        change_set: Sequence[ChangeFact] | None = None,
        rolls_back_entry_id: uuid.UUID | None = None,
    ) -> ImportAuditEntry:
        entry = ImportAuditEntry(
            company_id=company_id,
            actor_id=actor_id,
            action=action,
            event_metadata=metadata,
            change_set=(
                change_set_adapter.dump_python(list(change_set), mode="json") if change_set is not None else None
            ),
            rolls_back_entry_id=rolls_back_entry_id,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info("Recorded %s audit entry %s for company %s", action, entry.id, company_id)
        return entry

    def get(self, entry_id: uuid.UUID) -> ImportAuditEntry | None:
        return self.db.get(ImportAuditEntry, entry_id)

    def rollback_of(self, entry_id: uuid.UUID) -> ImportAuditEntry | None:
        stmt = select(ImportAuditEntry).where(ImportAuditEntry.rolls_back_entry_id == entry_id)
        return self.db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def change_facts(entry: ImportAuditEntry) -> list[ChangeFact]:
        return change_set_adapter.validate_python(entry.change_set or [])

    def _rolled_back_ids(self, company_id: uuid.UUID) -> set[uuid.UUID]:
        stmt = select(ImportAuditEntry.rolls_back_entry_id).where(
            ImportAuditEntry.company_id == company_id,
            ImportAuditEntry.rolls_back_entry_id.is_not(None),
        )
        return set(self.db.execute(stmt).scalars())

    def history(
        self,
        company_id: uuid.UUID,
        *,
        limit: int,
        rollback_window: timedelta,
        now: datetime | None = None,
    ) -> list[HistoryItem]:
        now = now or utcnow()
        stmt = (
            select(ImportAuditEntry)
            .options(selectinload(ImportAuditEntry.actor))
            .where(
                ImportAuditEntry.company_id == company_id,
                ImportAuditEntry.action.in_((*EXECUTE_ACTIONS, ACTION_ROLLBACK)),
            )
            .order_by(ImportAuditEntry.created_at.desc())
            .limit(limit)
        )
        entries = list(self.db.execute(stmt).scalars())
        rolled_back = self._rolled_back_ids(company_id)

        items: list[HistoryItem] = []
        for entry in entries:
            meta = entry.event_metadata or {}
            created_at = as_utc(entry.created_at)
            items.append(
                HistoryItem(
                    id=entry.id,
                    actor_id=entry.actor_id,
                    actor_name=entry.actor.name if entry.actor else None,
                    actor_email=entry.actor.email if entry.actor else None,
                    action=entry.action,
                    timestamp=created_at,
                    file_name=meta.get("file_name") or meta.get("original_file_name"),
                    total_rows=meta.get("total_rows"),
                    created=meta.get("created"),
                    updated=meta.get("updated"),
                    failed=meta.get("failed"),
                    can_rollback=(
                        entry.action in EXECUTE_ACTIONS
                        and now - created_at <= rollback_window
                        and entry.id not in rolled_back
                    ),
                )
            )
        return items

    def statistics(self, company_id: uuid.UUID, *, now: datetime | None = None) -> ImportStatistics:
        now = now or utcnow()
        stmt = select(ImportAuditEntry).where(
            ImportAuditEntry.company_id == company_id,
            ImportAuditEntry.action.in_((*EXECUTE_ACTIONS, ACTION_ROLLBACK)),
        )
        entries = list(self.db.execute(stmt).scalars())
        imports = [e for e in entries if e.action in EXECUTE_ACTIONS]

        stats = ImportStatistics(total_imports=len(imports))
        stats.total_rollbacks = len(entries) - len(imports)

        timings: list[int] = []
        for entry in imports:
            meta = entry.event_metadata or {}
            processed = meta.get("total_rows_processed", 0)
            stats.total_rows_processed += processed
            stats.total_created += meta.get("created", 0)
            stats.total_updated += meta.get("updated", 0)
            stats.total_failures += meta.get("failed", 0)
            if "execution_time_ms" in meta:
                timings.append(meta["execution_time_ms"])

            created_at = as_utc(entry.created_at)
            if processed > stats.largest_import.row_count:
                stats.largest_import = LargestImport(
                    file_name=meta.get("file_name"), row_count=processed, date=created_at
                )

            age = now - created_at
            if age <= timedelta(hours=24):
                stats.recent_activity.last_24_hours += 1
            if age <= timedelta(days=7):
                stats.recent_activity.last_7_days += 1
            if age <= timedelta(days=30):
                stats.recent_activity.last_30_days += 1

        if timings:
            stats.average_import_time_ms = sum(timings) / len(timings)
        return stats

    def cleanup(self, company_id: uuid.UUID, *, older_than_days: int, now: datetime | None = None) -> int:
        """
        Delete old preview entries, and old execute entries nobody rolled back.
        Rollback entries, and the entries they point at, are kept.
        """
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        referenced = (
            select(ImportAuditEntry.rolls_back_entry_id)
            .where(ImportAuditEntry.rolls_back_entry_id.is_not(None))
        )
        stmt = delete(ImportAuditEntry).where(
            ImportAuditEntry.company_id == company_id,
            ImportAuditEntry.created_at < cutoff,
            or_(
                ImportAuditEntry.action == ACTION_PREVIEW,
                and_(ImportAuditEntry.action.in_(EXECUTE_ACTIONS), ImportAuditEntry.id.not_in(referenced)),
            ),
        )
        deleted = self.db.execute(stmt.execution_options(synchronize_session=False)).rowcount or 0
        logger.info(
            "Removed %s import audit entries older than %s days for company %s",
            deleted,
            older_than_days,
            company_id,
        )
        return deleted
