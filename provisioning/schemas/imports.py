import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from provisioning.core.clock import utcnow

RowAction = Literal["create", "update"]
CapacityProfile = Literal["low", "medium", "high"]
RecoverableKind = Literal["validation", "duplicate", "manager_not_found", "weak_credential"]
CriticalKind = Literal["store_unavailable", "permission_denied", "internal"]

KEEP_EXISTING = "KEEP_EXISTING"  # password cell value that leaves the stored credential alone


class CandidateRow(BaseModel):
    """
    One input line. Built by the parser, enriched by the resolver and the
    rule engine, consumed by the writer. Never persisted as-is.
    """

    index: int  # 0-based position among the file's data rows
    line_number: int

    name: str | None = None
    email: str | None = None
    username: str | None = None
    role: str | None = None
    department: str | None = None
    position: str | None = None
    shift: str | None = None
    employee_id: str | None = None
    person_id: str | None = None
    company_code: str | None = None
    worker_type: str = "office"
    # Raw credential; never serialized into responses or audit metadata
    password: str | None = Field(default=None, repr=False, exclude=True)

    manager_email: str | None = None
    manager_person_id: str | None = None
    manager_employee_id: str | None = None

    # Line-level problems found while parsing, reported by the rule engine
    parse_problems: list[str] = Field(default_factory=list)

    # Resolver output
    action: RowAction = "create"
    existing_id: uuid.UUID | None = None
    manager_found: bool = True

    validation_errors: list[str] = Field(default_factory=list)
    credential_regenerated: bool = False

    @property
    def has_manager_reference(self) -> bool:
        return bool(self.manager_person_id or self.manager_employee_id or self.manager_email)

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors


class PreviewResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    create_count: int = 0
    update_count: int = 0
    rows: list[CandidateRow] = Field(default_factory=list)
    global_errors: list[str] = Field(default_factory=list)
    parse_errors: list[str] = Field(default_factory=list)
    audit_entry_id: uuid.UUID | None = None


class UpsertOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    selected_fields: list[str] | None = None  # update allowlist; None means every updatable field
    update_existing: bool = True
    create_new: bool = True
    skip_on_error: bool = True
    continue_on_validation_error: bool = True
    auto_fix_credentials: bool = False
    chunk_size: int | None = Field(default=None, ge=1)
    use_batching: bool = False
    capacity_profile: CapacityProfile | None = None


class RecoverableError(BaseModel):
    model_config = ConfigDict(frozen=True)

    row_index: int
    name: str
    email: str | None = None
    username: str | None = None
    employee_id: str | None = None
    person_id: str | None = None
    worker_type: str | None = None
    kind: RecoverableKind
    message: str
    suggested_fix: str | None = None
    retryable: bool = True


class CriticalError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: CriticalKind
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    requires_operator_action: Literal[True] = True
    row_index: int | None = None


# Change-set facts recorded on execute-class audit entries

CREDENTIAL_FACT_FIELD = "password"


class Created(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["created"] = "created"
    record_id: uuid.UUID


class FieldUpdated(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["field_updated"] = "field_updated"
    record_id: uuid.UUID
    field: str
    old_value: Any = None
    new_value: Any = None

    @property
    def is_credential(self) -> bool:
        return self.field == CREDENTIAL_FACT_FIELD


ChangeFact = Annotated[Union[Created, FieldUpdated], Field(discriminator="kind")]
change_set_adapter = TypeAdapter(list[ChangeFact])


class ExecutionResult(BaseModel):
    success: bool
    message: str
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    total_rows_processed: int = 0
    partial_success: bool = False
    errors: list[str] = Field(default_factory=list)
    recoverable_errors: list[RecoverableError] = Field(default_factory=list)
    critical_errors: list[CriticalError] = Field(default_factory=list)
    audit_entry_id: uuid.UUID | None = None


class BatchProgress(BaseModel):
    batch_number: int
    size: int
    status: Literal["completed", "failed"]
    created: int = 0
    updated: int = 0
    failed: int = 0
    elapsed_ms: int = 0


class BatchedExecutionResult(ExecutionResult):
    batched: bool = False
    batch_id: str | None = None
    total_batches: int = 1
    chunk_size: int | None = None
    per_batch_progress: list[BatchProgress] = Field(default_factory=list)


class RowFix(BaseModel):
    row_index: int
    fixes: dict[str, Any]


class InvalidFix(BaseModel):
    row_index: int
    error: str


class FixValidation(BaseModel):
    valid_fixes: list[RowFix] = Field(default_factory=list)
    invalid_fixes: list[InvalidFix] = Field(default_factory=list)
    ready_for_retry: bool = False


class RetryResult(ExecutionResult):
    retried_rows: int = 0
    original_errors: list[RecoverableError] = Field(default_factory=list)


class RollbackResult(BaseModel):
    rollback_entry_id: uuid.UUID
    original_entry_id: uuid.UUID
    rolled_back_records: int
    deleted: int
    reverted: int


class RecoverySuggestions(BaseModel):
    auto_fixable: list[RecoverableError]
    manual_fix_required: list[RecoverableError]
    enable_auto_fix: bool
    enable_update_mode: bool
    split_into_smaller_batches: bool
    import_managers_first: bool


class ReportedError(RecoverableError):
    recommended_action: str


class ErrorReport(BaseModel):
    timestamp: datetime
    total_recoverable_errors: int
    total_critical_errors: int
    error_categories: dict[str, int]
    recoverable_errors: list[ReportedError]
    critical_errors: list[CriticalError]
    recommendations: list[str]


class HistoryItem(BaseModel):
    id: uuid.UUID
    actor_id: uuid.UUID | None
    actor_name: str | None
    actor_email: str | None
    action: str
    timestamp: datetime
    file_name: str | None = None
    total_rows: int | None = None
    created: int | None = None
    updated: int | None = None
    failed: int | None = None
    can_rollback: bool = False


class LargestImport(BaseModel):
    file_name: str | None = None
    row_count: int = 0
    date: datetime | None = None


class RecentActivity(BaseModel):
    last_24_hours: int = 0
    last_7_days: int = 0
    last_30_days: int = 0


class ImportStatistics(BaseModel):
    total_imports: int = 0
    total_rows_processed: int = 0
    total_created: int = 0
    total_updated: int = 0
    total_failures: int = 0
    total_rollbacks: int = 0
    average_import_time_ms: float = 0.0
    largest_import: LargestImport = Field(default_factory=LargestImport)
    recent_activity: RecentActivity = Field(default_factory=RecentActivity)


class ErrorReportRequest(BaseModel):
    recoverable_errors: list[RecoverableError] = Field(default_factory=list)
    critical_errors: list[CriticalError] = Field(default_factory=list)


class FixRequest(BaseModel):
    errors: list[RecoverableError]
    fixes: list[RowFix] = Field(default_factory=list)
