"""
Bulk member import: preview, execute (plain or chunked), retry and rollback.

Pipeline per run: parse -> resolve + validate (preview) -> plan chunks ->
hash a chunk's credentials -> write the chunk row by row -> one audit entry.
Chunks run strictly one after another; within a chunk only hashing is
parallel and every hash resolves before the first write.
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy.orm import Session

from provisioning.core.config import Settings
from provisioning.db.session import transaction
from provisioning.models.import_audit import ACTION_BATCH_EXECUTE, ACTION_EXECUTE, ACTION_PREVIEW, ImportAuditEntry
from provisioning.schemas.imports import (
    BatchedExecutionResult,
    BatchProgress,
    CandidateRow,
    ChangeFact,
    CriticalError,
    ExecutionResult,
    HistoryItem,
    ImportStatistics,
    PreviewResult,
    RecoverableError,
    RetryResult,
    RollbackResult,
    RowFix,
    UpsertOptions,
)
from provisioning.services.batch_planner import plan_batches
from provisioning.services.directory import DirectoryWriter, SqlAlchemyDirectory, resolve_row
from provisioning.services.errors import (
    HashingError,
    ImportAborted,
    MalformedFileError,
    categorize_error,
    categorize_validation_failure,
)
from provisioning.services.hashing import CredentialHasher, HasherPool
from provisioning.services.journal import AuditJournal
from provisioning.services.parser import ParsedFile, estimate_rows, parse_member_file
from provisioning.services.recovery import select_retry_rows
from provisioning.services.rollback import rollback_import
from provisioning.services.validation import is_credential_message, is_manager_message, validate_row
from provisioning.services.writer import TransactionalWriter

logger = logging.getLogger(__name__)

# Retries always repair credentials and push past leftover validation errors
RETRY_OPTIONS = UpsertOptions(
    update_existing=True,
    create_new=True,
    skip_on_error=True,
    continue_on_validation_error=True,
    auto_fix_credentials=True,
)


@dataclass(frozen=True)
class EngineConfig:
    max_rows: int = 10_000
    max_file_bytes: int = 10 * 1024 * 1024
    bytes_per_row: int = 512
    batch_threshold: int = 500
    capacity_profile: str = "medium"
    history_limit: int = 50
    rollback_window: timedelta = timedelta(hours=24)
    retention_days: int = 90
    hash_workers: int = 32

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            max_rows=settings.IMPORT_MAX_ROWS,
            max_file_bytes=settings.IMPORT_MAX_FILE_BYTES,
            bytes_per_row=settings.IMPORT_BYTES_PER_ROW,
            batch_threshold=settings.IMPORT_BATCH_THRESHOLD,
            capacity_profile=settings.IMPORT_CAPACITY_PROFILE,
            history_limit=settings.IMPORT_HISTORY_LIMIT,
            rollback_window=timedelta(hours=settings.ROLLBACK_WINDOW_HOURS),
            retention_days=settings.AUDIT_RETENTION_DAYS,
            hash_workers=settings.IMPORT_HASH_WORKERS,
        )


@dataclass(frozen=True)
class ImportContext:
    """Who is importing, into which company, from which file."""

    company_id: uuid.UUID
    actor_id: uuid.UUID | None = None
    file_name: str = "import.csv"


@dataclass
class _Tally:
    created: int = 0
    updated: int = 0
    failed: int = 0
    changes: list[ChangeFact] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    recoverable: list[RecoverableError] = field(default_factory=list)
    critical: list[CriticalError] = field(default_factory=list)
    aborted_by: BaseException | None = None

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.failed


def _writable_despite(messages: list[str], options: UpsertOptions) -> bool:
    if not options.continue_on_validation_error:
        return False
    for message in messages:
        if is_manager_message(message):
            continue
        if not (is_credential_message(message) and options.auto_fix_credentials):
            return False
    return True


def select_rows(
    rows: Iterable[CandidateRow], options: UpsertOptions
) -> tuple[list[CandidateRow], list[CandidateRow], list[CandidateRow]]:
    """
    Split analyzed rows into (to_write, invalid, not_selected). Rows to write
    are copies, so repairing credentials never touches a PreviewResult.

    An invalid row is still written when continue_on_validation_error is on
    and its only problems are an unresolved manager reference (the member is
    created without a manager) or credential problems that
    auto_fix_credentials will repair.
    """
    to_write: list[CandidateRow] = []
    invalid: list[CandidateRow] = []
    not_selected: list[CandidateRow] = []
    for row in rows:
        if row.validation_errors:
            if not _writable_despite(row.validation_errors, options):
                invalid.append(row)
                continue
        if row.action == "create" and not options.create_new:
            not_selected.append(row)
            continue
        if row.action == "update" and not options.update_existing:
            not_selected.append(row)
            continue
        to_write.append(row.model_copy(deep=True))
    return to_write, invalid, not_selected


class ImportEngine:
    def __init__(
        self,
        db: Session,
        *,
        config: EngineConfig,
        hasher: CredentialHasher,
        directory: DirectoryWriter | None = None,
        journal: AuditJournal | None = None,
    ):
        self.db = db
        self.config = config
        self.directory = directory or SqlAlchemyDirectory(db)
        self.journal = journal or AuditJournal(db)
        self.writer = TransactionalWriter(self.directory)
        self.pool = HasherPool(hasher, max_workers=config.hash_workers)

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def _parse(self, data: bytes) -> ParsedFile:
        return parse_member_file(data, max_rows=self.config.max_rows, max_bytes=self.config.max_file_bytes)

    def _analyze(self, company_id: uuid.UUID, rows: list[CandidateRow]) -> list[CandidateRow]:
        for row in rows:
            resolve_row(self.directory, company_id, row)
            row.validation_errors = validate_row(row)
        return rows

    def _build_preview(self, ctx: ImportContext, data: bytes) -> PreviewResult:
        try:
            parsed = self._parse(data)
        except MalformedFileError as exc:
            logger.warning("Rejected import file %s: %s", ctx.file_name, exc)
            return PreviewResult(success=False, global_errors=["Failed to parse file"], parse_errors=exc.errors)

        rows = self._analyze(ctx.company_id, parsed.rows)
        valid = [r for r in rows if r.is_valid]
        # An unknown manager only drops the link, so those rows are still created or updated
        writable = [r for r in rows if all(is_manager_message(m) for m in r.validation_errors)]
        return PreviewResult(
            success=True,
            total_rows=len(rows),
            valid_rows=len(valid),
            invalid_rows=len(rows) - len(valid),
            create_count=sum(1 for r in writable if r.action == "create"),
            update_count=sum(1 for r in writable if r.action == "update"),
            rows=rows,
            parse_errors=parsed.parse_errors,
        )

    def preview(self, ctx: ImportContext, data: bytes) -> PreviewResult:
        started = time.perf_counter()
        result = self._build_preview(ctx, data)
        with transaction(self.db):
            entry = self.journal.record(
                company_id=ctx.company_id,
                actor_id=ctx.actor_id,
                action=ACTION_PREVIEW,
                metadata={
                    "file_name": ctx.file_name,
                    "file_size": len(data),
                    "success": result.success,
                    "total_rows": result.total_rows,
                    "valid_rows": result.valid_rows,
                    "invalid_rows": result.invalid_rows,
                    "create_count": result.create_count,
                    "update_count": result.update_count,
                    "execution_time_ms": _elapsed_ms(started),
                },
            )
        return result.model_copy(update={"audit_entry_id": entry.id})

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _skip_invalid(self, invalid: list[CandidateRow], tally_errors: list[str]) -> list[RecoverableError]:
        skipped: list[RecoverableError] = []
        for row in invalid:
            logger.warning("Skipping row %s: %s", row.line_number, "; ".join(row.validation_errors))
            skipped.append(categorize_validation_failure(row))
            tally_errors.append(f"Row {row.line_number}: {'; '.join(row.validation_errors)}")
        return skipped

    def _process_chunk(
        self, ctx: ImportContext, rows: list[CandidateRow], options: UpsertOptions, tally: _Tally
    ) -> None:
        if not rows:
            return
        try:
            hashes = self.pool.prepare_chunk(rows, auto_fix=options.auto_fix_credentials)
        except HashingError as exc:
            logger.exception("Credential hashing failed for a chunk of %s rows", len(rows))
            error = categorize_error(exc)
            tally.critical.append(error)
            tally.errors.append(error.message)
            tally.failed += len(rows)
            if not options.skip_on_error:
                tally.aborted_by = exc
            return

        for row, hashed in zip(rows, hashes):
            try:
                write = self.writer.write(ctx.company_id, row, hashed, options.selected_fields)
            except Exception as exc:
                error = categorize_error(exc, row, row.index)
                tally.failed += 1
                tally.errors.append(f"Row {row.line_number}: {error.message}")
                if isinstance(error, CriticalError):
                    logger.exception("Critical error writing row %s", row.line_number)
                    tally.critical.append(error)
                else:
                    logger.warning("Row %s failed (%s): %s", row.line_number, error.kind, exc)
                    tally.recoverable.append(error)
                if not options.skip_on_error:
                    tally.aborted_by = exc
                    return
                continue

            if write.outcome == "created":
                tally.created += 1
            else:
                tally.updated += 1
            tally.changes.extend(write.changes)

    def _record_execution(
        self,
        ctx: ImportContext,
        action: str,
        tally: _Tally,
        *,
        data: bytes,
        total_rows: int,
        skipped: int,
        options: UpsertOptions,
        started: float,
        extra: dict[str, Any] | None = None,
    ) -> ImportAuditEntry:
        metadata = {
            "file_name": ctx.file_name,
            "file_size": len(data),
            "estimated_rows": estimate_rows(len(data), self.config.bytes_per_row),
            "total_rows": total_rows,
            "total_rows_processed": tally.processed,
            "created": tally.created,
            "updated": tally.updated,
            "failed": tally.failed,
            "skipped": skipped,
            "aborted": tally.aborted_by is not None,
            "execution_time_ms": _elapsed_ms(started),
            "options": options.model_dump(mode="json"),
            **(extra or {}),
        }
        with transaction(self.db):
            return self.journal.record(
                company_id=ctx.company_id,
                actor_id=ctx.actor_id,
                action=action,
                metadata=metadata,
                change_set=tally.changes,
            )

    @staticmethod
    def _outcome(tally: _Tally, skipped: list[RecoverableError], options: UpsertOptions) -> dict[str, Any]:
        wrote_something = tally.created > 0 or tally.updated > 0
        success = tally.failed == 0 or (wrote_something and options.skip_on_error)
        counts = f"{tally.created} created, {tally.updated} updated, {tally.failed} failed"
        if tally.aborted_by is not None:
            message = f"Import aborted after {tally.processed} row(s): {counts}"
            success = False
        elif tally.failed == 0:
            message = f"Import completed: {tally.created} created, {tally.updated} updated"
        elif success:
            message = f"Import partially completed: {counts}"
        else:
            message = f"Import failed: {counts}"
        if skipped:
            message += f", {len(skipped)} skipped"

        return {
            "success": success,
            "partial_success": success and tally.failed > 0,
            "message": message,
            "created": tally.created,
            "updated": tally.updated,
            "failed": tally.failed,
            "total_rows_processed": tally.processed,
            "errors": tally.errors,
            "recoverable_errors": [*skipped, *tally.recoverable],
            "critical_errors": tally.critical,
        }

    def _execute_rows(
        self,
        ctx: ImportContext,
        rows: list[CandidateRow],
        options: UpsertOptions,
        *,
        data: bytes,
        started: float,
    ) -> ExecutionResult:
        to_write, invalid, not_selected = select_rows(rows, options)
        tally = _Tally()
        skipped = self._skip_invalid(invalid, tally.errors)

        self._process_chunk(ctx, to_write, options, tally)

        entry = self._record_execution(
            ctx,
            ACTION_EXECUTE,
            tally,
            data=data,
            total_rows=len(rows),
            skipped=len(invalid) + len(not_selected),
            options=options,
            started=started,
        )
        result = ExecutionResult(
            **self._outcome(tally, skipped, options),
            skipped=len(invalid) + len(not_selected),
            audit_entry_id=entry.id,
        )
        logger.info("Import %s finished: %s", entry.id, result.message)
        if tally.aborted_by is not None:
            raise ImportAborted(result) from tally.aborted_by
        return result

    def execute(
        self,
        ctx: ImportContext,
        data: bytes,
        options: UpsertOptions | None = None,
        preview: PreviewResult | None = None,
    ) -> ExecutionResult:
        """
        Write every selected row, one transaction per row. A PreviewResult
        for the same file can be passed in to skip re-analysis.

        Raises ImportAborted when skip_on_error=False and a row fails; rows
        committed before it stay committed and are recorded in the journal.
        """
        options = options or UpsertOptions()
        started = time.perf_counter()
        preview = preview or self._build_preview(ctx, data)
        if not preview.success:
            return ExecutionResult(
                success=False,
                message="File validation failed",
                errors=[*preview.global_errors, *preview.parse_errors],
            )
        return self._execute_rows(ctx, preview.rows, options, data=data, started=started)

    def execute_batched(
        self, ctx: ImportContext, data: bytes, options: UpsertOptions | None = None
    ) -> BatchedExecutionResult:
        """
        Like execute(), but large files are written in sequential chunks.
        Files below the batching threshold go through execute() unchanged.
        """
        options = options or UpsertOptions()
        started = time.perf_counter()
        estimated = estimate_rows(len(data), self.config.bytes_per_row)
        logger.info("Analyzing %s: %s bytes, ~%s rows", ctx.file_name, len(data), estimated)

        preview = self._build_preview(ctx, data)
        if not preview.success:
            return BatchedExecutionResult(
                success=False,
                message="File validation failed",
                errors=[*preview.global_errors, *preview.parse_errors],
            )

        # Short lines make the size estimate undercount; never plan below the real row count
        plan = plan_batches(
            max(estimated, preview.total_rows),
            options,
            threshold=self.config.batch_threshold,
            default_profile=self.config.capacity_profile,
        )
        if not plan.use_batching:
            logger.info("Batching not needed for %s rows, using standard execution", plan.estimated_rows)
            result = self.execute(ctx, data, options, preview=preview)
            return BatchedExecutionResult(**result.model_dump())

        to_write, invalid, not_selected = select_rows(preview.rows, options)
        tally = _Tally()
        skipped = self._skip_invalid(invalid, tally.errors)

        batch_id = f"batch_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        size = plan.chunk_size
        chunks = [to_write[i : i + size] for i in range(0, len(to_write), size)]
        logger.info("Batch %s: %s rows in %s chunk(s) of %s", batch_id, len(to_write), len(chunks), size)

        progress: list[BatchProgress] = []
        for number, chunk in enumerate(chunks, start=1):
            chunk_started = time.perf_counter()
            before = (tally.created, tally.updated, tally.failed)
            self._process_chunk(ctx, chunk, options, tally)
            elapsed = _elapsed_ms(chunk_started)
            progress.append(
                BatchProgress(
                    batch_number=number,
                    size=len(chunk),
                    status="failed" if tally.aborted_by is not None else "completed",
                    created=tally.created - before[0],
                    updated=tally.updated - before[1],
                    failed=tally.failed - before[2],
                    elapsed_ms=elapsed,
                )
            )
            remaining = len(chunks) - number
            logger.info(
                "Batch %s chunk %s/%s done in %sms, ~%sms remaining",
                batch_id,
                number,
                len(chunks),
                elapsed,
                elapsed * remaining,
            )
            if tally.aborted_by is not None:
                break

        entry = self._record_execution(
            ctx,
            ACTION_BATCH_EXECUTE,
            tally,
            data=data,
            total_rows=preview.total_rows,
            skipped=len(invalid) + len(not_selected),
            options=options,
            started=started,
            extra={"batch_id": batch_id, "total_batches": len(chunks), "chunk_size": size},
        )
        result = BatchedExecutionResult(
            **self._outcome(tally, skipped, options),
            skipped=len(invalid) + len(not_selected),
            audit_entry_id=entry.id,
            batched=True,
            batch_id=batch_id,
            total_batches=len(chunks),
            chunk_size=size,
            per_batch_progress=progress,
        )
        logger.info("Batch %s finished: %s", batch_id, result.message)
        if tally.aborted_by is not None:
            raise ImportAborted(result) from tally.aborted_by
        return result

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def retry_failed_rows(
        self,
        ctx: ImportContext,
        data: bytes,
        errors: list[RecoverableError],
        fixes: list[RowFix] | None = None,
    ) -> RetryResult:
        """
        Re-run only the rows named by `errors`, with `fixes` applied to them.
        Other rows of the file are never touched.
        """
        started = time.perf_counter()
        try:
            parsed = self._parse(data)
        except MalformedFileError as exc:
            return RetryResult(
                success=False,
                message="File validation failed",
                errors=exc.errors,
                original_errors=errors,
            )

        rows = self._analyze(ctx.company_id, select_retry_rows(parsed.rows, errors, fixes or []))
        logger.info("Retrying %s of %s rows from %s", len(rows), len(parsed.rows), ctx.file_name)
        result = self._execute_rows(ctx, rows, RETRY_OPTIONS, data=data, started=started)
        return RetryResult(**result.model_dump(), retried_rows=len(rows), original_errors=errors)

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def rollback(self, ctx: ImportContext, entry_id: uuid.UUID) -> RollbackResult:
        return rollback_import(
            self.db,
            directory=self.directory,
            journal=self.journal,
            company_id=ctx.company_id,
            actor_id=ctx.actor_id,
            entry_id=entry_id,
            window=self.config.rollback_window,
        )

    def get_history(self, company_id: uuid.UUID) -> list[HistoryItem]:
        return self.journal.history(
            company_id, limit=self.config.history_limit, rollback_window=self.config.rollback_window
        )

    def get_statistics(self, company_id: uuid.UUID) -> ImportStatistics:
        return self.journal.statistics(company_id)

    def cleanup_old_entries(self, company_id: uuid.UUID, older_than_days: int | None = None) -> int:
        with transaction(self.db):
            return self.journal.cleanup(
                company_id, older_than_days=older_than_days or self.config.retention_days
            )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
