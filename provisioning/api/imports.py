"""
API endpoints for bulk member imports.

Upload endpoints take the file as multipart `file` and the options as a
JSON string in the `options` form field.
"""

import json
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from provisioning.core.config import settings
from provisioning.core.rbac import require_roles
from provisioning.db.session import get_db
from provisioning.models.member import Member
from provisioning.schemas.imports import (
    BatchedExecutionResult,
    ErrorReport,
    ErrorReportRequest,
    ExecutionResult,
    FixRequest,
    FixValidation,
    HistoryItem,
    ImportStatistics,
    PreviewResult,
    RecoverableError,
    RecoverySuggestions,
    RetryResult,
    RollbackResult,
    RowFix,
    UpsertOptions,
)
from provisioning.services.errors import ImportAborted, RollbackRejectedError, RollbackRejection
from provisioning.services.hashing import WerkzeugCredentialHasher
from provisioning.services.import_engine import EngineConfig, ImportContext, ImportEngine
from provisioning.services.recovery import (
    bulk_apply_common_fixes,
    generate_error_report,
    generate_recovery_suggestions,
    validate_fixes,
)

router = APIRouter(prefix="/imports", tags=["imports"])

_REJECTION_STATUS = {
    RollbackRejection.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RollbackRejection.WRONG_TENANT: status.HTTP_403_FORBIDDEN,
    RollbackRejection.EXPIRED: status.HTTP_410_GONE,
    RollbackRejection.ALREADY_ROLLED_BACK: status.HTTP_409_CONFLICT,
}

_errors_adapter = TypeAdapter(list[RecoverableError])
_fixes_adapter = TypeAdapter(list[RowFix])


def get_import_engine(db: Session = Depends(get_db)) -> ImportEngine:
    return ImportEngine(
        db,
        config=EngineConfig.from_settings(settings),
        hasher=WerkzeugCredentialHasher(settings.PASSWORD_HASH_METHOD),
    )


def _context(member: Member, upload: UploadFile | None = None) -> ImportContext:
    return ImportContext(
        company_id=member.company_id,
        actor_id=member.id,
        file_name=(upload.filename if upload and upload.filename else "import.csv"),
    )


def _parse_options(raw: str | None) -> UpsertOptions:
    if not raw:
        return UpsertOptions()
    try:
        return UpsertOptions.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json()))


def _parse_form_json(raw: str | None, adapter: TypeAdapter, field: str):
    if not raw:
        return []
    try:
        return adapter.validate_json(raw)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": field, "errors": json.loads(e.json())})


def _aborted(exc: ImportAborted) -> HTTPException:
    result = exc.result
    code = 500 if result.critical_errors else 422
    return HTTPException(status_code=code, detail=result.model_dump(mode="json"))


def _reject_unparseable(result: ExecutionResult) -> ExecutionResult:
    # Files rejected before any row was attempted never reach the journal
    if not result.success and result.audit_entry_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.model_dump(mode="json"))
    return result


@router.post("/preview", response_model=PreviewResult)
def preview_import(
    file: UploadFile = File(...),
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    result = engine.preview(_context(member, file), file.file.read())
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.model_dump(mode="json"))
    return result


@router.post("/execute", response_model=ExecutionResult)
def execute_import(
    file: UploadFile = File(...),
    options: str | None = Form(None),
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    opts = _parse_options(options)
    try:
        result = engine.execute(_context(member, file), file.file.read(), opts)
    except ImportAborted as exc:
        raise _aborted(exc)
    return _reject_unparseable(result)


@router.post("/execute-batched", response_model=BatchedExecutionResult)
def execute_import_batched(
    file: UploadFile = File(...),
    options: str | None = Form(None),
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    opts = _parse_options(options)
    try:
        result = engine.execute_batched(_context(member, file), file.file.read(), opts)
    except ImportAborted as exc:
        raise _aborted(exc)
    return _reject_unparseable(result)


@router.post("/retry", response_model=RetryResult)
def retry_import(
    file: UploadFile = File(...),
    errors: str = Form(...),
    fixes: str | None = Form(None),
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    recoverable = _parse_form_json(errors, _errors_adapter, "errors")
    row_fixes = _parse_form_json(fixes, _fixes_adapter, "fixes")
    result = engine.retry_failed_rows(_context(member, file), file.file.read(), recoverable, row_fixes)
    return _reject_unparseable(result)


@router.post("/{entry_id}/rollback", response_model=RollbackResult)
def rollback_import(
    entry_id: UUID,
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    try:
        return engine.rollback(_context(member), entry_id)
    except RollbackRejectedError as exc:
        raise HTTPException(
            status_code=_REJECTION_STATUS[exc.reason],
            detail={"reason": exc.reason.value, "message": str(exc)},
        )


@router.get("/history", response_model=list[HistoryItem])
def import_history(
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    return engine.get_history(member.company_id)


@router.get("/statistics", response_model=ImportStatistics)
def import_statistics(
    engine: ImportEngine = Depends(get_import_engine),
    member: Member = Depends(require_roles("admin")),
):
    return engine.get_statistics(member.company_id)


@router.post("/errors/report", response_model=ErrorReport)
def error_report(
    payload: ErrorReportRequest,
    _=Depends(require_roles("admin")),
):
    return generate_error_report(payload.recoverable_errors, payload.critical_errors)


@router.post("/errors/suggestions", response_model=RecoverySuggestions)
def recovery_suggestions(
    payload: ErrorReportRequest,
    _=Depends(require_roles("admin")),
):
    return generate_recovery_suggestions(payload.recoverable_errors)


@router.post("/fixes/validate", response_model=FixValidation)
def check_fixes(
    payload: FixRequest,
    _=Depends(require_roles("admin")),
):
    return validate_fixes(payload.errors, payload.fixes)


@router.post("/fixes/auto", response_model=list[RowFix])
def auto_fixes(
    payload: FixRequest,
    _=Depends(require_roles("admin")),
):
    return bulk_apply_common_fixes(payload.errors)
