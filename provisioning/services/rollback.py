import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from provisioning.core.clock import as_utc, utcnow
from provisioning.db.session import transaction
from provisioning.models.import_audit import ACTION_ROLLBACK, EXECUTE_ACTIONS
from provisioning.schemas.imports import Created, FieldUpdated, RollbackResult
from provisioning.services.directory import DirectoryWriter
from provisioning.services.errors import RollbackRejectedError, RollbackRejection
from provisioning.services.journal import AuditJournal

logger = logging.getLogger(__name__)


def _reject(entry_id: uuid.UUID, reason: RollbackRejection) -> RollbackRejectedError:
    logger.warning("Rollback of import %s rejected: %s", entry_id, reason.value)
    return RollbackRejectedError(reason)


def rollback_import(
    db: Session,
    *,
    directory: DirectoryWriter,
    journal: AuditJournal,
    company_id: uuid.UUID,
    actor_id: uuid.UUID | None,
    entry_id: uuid.UUID,
    window: timedelta,
    now: datetime | None = None,
) -> RollbackResult:
    """
    Undo an execute-class import: hard-delete the members it created and put
    updated fields back to their old values. Credentials are never reverted.

    Everything, including the new rollback entry, commits in one transaction.
    Nothing changes when a precondition fails.
    """
    now = now or utcnow()
    entry = journal.get(entry_id)
    if entry is None or entry.action not in EXECUTE_ACTIONS:
        raise _reject(entry_id, RollbackRejection.NOT_FOUND)
    if entry.company_id != company_id:
        raise _reject(entry_id, RollbackRejection.WRONG_TENANT)
    if now - as_utc(entry.created_at) > window:
        raise _reject(entry_id, RollbackRejection.EXPIRED)
    if journal.rollback_of(entry.id) is not None:
        raise _reject(entry_id, RollbackRejection.ALREADY_ROLLED_BACK)

    facts = journal.change_facts(entry)
    deleted_ids: set[uuid.UUID] = set()
    reverted_ids: set[uuid.UUID] = set()

    with transaction(db):
        # Newest fact first, so a field changed twice ends at its oldest value
        for fact in reversed(facts):
            if isinstance(fact, Created):
                if directory.delete_members(company_id, [fact.record_id]):
                    deleted_ids.add(fact.record_id)
            elif isinstance(fact, FieldUpdated) and not fact.is_credential:
                member = directory.get_member(company_id, fact.record_id)
                if member is None:
                    continue
                directory.update_member(member, {fact.field: fact.old_value})
                reverted_ids.add(fact.record_id)

        reverted = len(reverted_ids - deleted_ids)
        rolled_back = len(deleted_ids) + reverted
        try:
            rollback_entry = journal.record(
                company_id=company_id,
                actor_id=actor_id,
                action=ACTION_ROLLBACK,
                rolls_back_entry_id=entry.id,
                metadata={
                    "original_import_id": str(entry.id),
                    "original_file_name": (entry.event_metadata or {}).get("file_name"),
                    "rolled_back_records": rolled_back,
                    "deleted": len(deleted_ids),
                    "reverted": reverted,
                },
            )
        except IntegrityError as exc:
            # A concurrent rollback of the same entry got there first
            raise _reject(entry_id, RollbackRejection.ALREADY_ROLLED_BACK) from exc

    logger.info("Rolled back import %s: %s deleted, %s reverted", entry.id, len(deleted_ids), reverted)
    return RollbackResult(
        rollback_entry_id=rollback_entry.id,
        original_entry_id=entry.id,
        rolled_back_records=rolled_back,
        deleted=len(deleted_ids),
        reverted=reverted,
    )
