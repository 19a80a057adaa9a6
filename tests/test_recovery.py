from sqlalchemy import select

from provisioning.models.member import Member
from provisioning.schemas.imports import CriticalError, RecoverableError, RowFix, UpsertOptions
from provisioning.services.recovery import (
    bulk_apply_common_fixes,
    generate_error_report,
    generate_recovery_suggestions,
    validate_fixes,
)
from provisioning.services.validation import MSG_MISSING_PERSON_ID, MSG_PASSWORD_LENGTH

from tests.helpers import csv_bytes, member_row


def error(row_index, kind, **extra) -> RecoverableError:
    values = {"row_index": row_index, "name": f"Row {row_index}", "kind": kind, "message": kind}
    values.update(extra)
    return RecoverableError(**values)


def file_with_duplicate() -> bytes:
    return csv_bytes(
        [
            member_row(name="One", email="one@acme.test", personId="P-1"),
            member_row(name="Two", email="one@acme.test", personId="P-2"),
            member_row(name="Three", email="three@acme.test", personId="P-3"),
        ]
    )


def test_retry_touches_only_the_failed_rows(import_engine, ctx, db_session):
    data = file_with_duplicate()
    first = import_engine.execute(ctx, data)
    assert (first.created, first.failed) == (2, 1)

    fixes = bulk_apply_common_fixes(first.recoverable_errors)
    assert fixes == [RowFix(row_index=1, fixes={"email": "one+dup2@acme.test"})]

    retry = import_engine.retry_failed_rows(ctx, data, first.recoverable_errors, fixes)
    assert retry.retried_rows == 1
    assert (retry.created, retry.updated, retry.failed) == (1, 0, 0)
    assert retry.original_errors == first.recoverable_errors

    stored = db_session.execute(select(Member).where(Member.person_id == "P-2")).scalar_one()
    assert stored.email == "one+dup2@acme.test"


def test_retry_repairs_weak_credentials(import_engine, ctx, db_session, hasher):
    data = csv_bytes([member_row(email="weak@acme.test", personId="P-W", password="short")])
    first = import_engine.execute(ctx, data)
    assert first.skipped == 1
    assert first.recoverable_errors[0].kind == "weak_credential"

    retry = import_engine.retry_failed_rows(ctx, data, first.recoverable_errors)
    assert retry.created == 1

    stored = db_session.execute(select(Member).where(Member.person_id == "P-W")).scalar_one()
    assert not hasher.verify(stored.password_hash, "short")


def test_retry_without_errors_writes_nothing(import_engine, ctx):
    retry = import_engine.retry_failed_rows(ctx, file_with_duplicate(), [])
    assert retry.retried_rows == 0
    assert retry.total_rows_processed == 0


def test_retry_of_unreadable_file(import_engine, ctx):
    retry = import_engine.retry_failed_rows(ctx, b"", [error(0, "duplicate")])
    assert retry.success is False
    assert retry.message == "File validation failed"


def test_duplicate_fix_must_change_an_identifier():
    dup = error(1, "duplicate", email="one@acme.test")

    same = validate_fixes([dup], [RowFix(row_index=1, fixes={"email": "one@acme.test"})])
    assert same.ready_for_retry is False
    assert same.invalid_fixes[0].row_index == 1

    changed = validate_fixes([dup], [RowFix(row_index=1, fixes={"employee_id": "E-9"})])
    assert changed.ready_for_retry is True


def test_credential_fix_must_meet_the_policy():
    weak = error(0, "weak_credential", worker_type="office")

    result = validate_fixes([weak], [RowFix(row_index=0, fixes={"password": "short"})])
    assert result.invalid_fixes[0].error == MSG_PASSWORD_LENGTH

    pin = error(0, "weak_credential", worker_type="operational")
    assert validate_fixes([pin], [RowFix(row_index=0, fixes={"password": "123456"})]).ready_for_retry


def test_fix_validation_rejects_strays_and_unknown_fields():
    errors = [error(0, "manager_not_found"), error(1, "validation", message=MSG_MISSING_PERSON_ID)]
    result = validate_fixes(
        errors,
        [
            RowFix(row_index=0, fixes={"manager_person_id": None}),
            RowFix(row_index=1, fixes={"department": "Ops"}),
            RowFix(row_index=5, fixes={"name": "Nobody"}),
            RowFix(row_index=1, fixes={"salary": "1"}),
        ],
    )

    assert [f.row_index for f in result.valid_fixes] == [0]
    assert sorted(f.row_index for f in result.invalid_fixes) == [1, 1, 5]
    assert result.ready_for_retry is False


def test_bulk_fixes_cover_each_automatic_kind():
    fixes = bulk_apply_common_fixes(
        [
            error(0, "weak_credential", worker_type="operational"),
            error(2, "duplicate", username="jdoe"),
            error(3, "manager_not_found"),
            error(4, "validation"),
        ]
    )
    by_row = {f.row_index: f.fixes for f in fixes}

    assert by_row[0]["password"].isdigit()
    assert by_row[2] == {"username": "jdoe-3"}
    assert by_row[3] == {"manager_person_id": None, "manager_employee_id": None, "manager_email": None}
    assert 4 not in by_row


def test_recovery_suggestions():
    errors = [error(i, "duplicate") for i in range(10)] + [error(10, "weak_credential")]
    suggestions = generate_recovery_suggestions(errors)

    assert len(suggestions.auto_fixable) == 1
    assert len(suggestions.manual_fix_required) == 10
    assert suggestions.enable_auto_fix is True
    assert suggestions.enable_update_mode is True
    assert suggestions.split_into_smaller_batches is True
    assert suggestions.import_managers_first is False


def test_error_report():
    report = generate_error_report(
        [error(0, "duplicate"), error(1, "duplicate"), error(2, "manager_not_found")],
        [CriticalError(kind="store_unavailable", message="down")],
    )

    assert report.total_recoverable_errors == 3
    assert report.total_critical_errors == 1
    assert report.error_categories == {"duplicate": 2, "manager_not_found": 1}
    assert report.recoverable_errors[2].recommended_action.startswith("Import the manager first")
    assert report.recommendations[0].startswith("Critical errors detected")


def test_auto_fix_option_makes_retry_unnecessary(import_engine, ctx):
    data = csv_bytes([member_row(email="weak@acme.test", personId="P-W", password="short")])
    result = import_engine.execute(ctx, data, UpsertOptions(auto_fix_credentials=True))
    assert result.created == 1
    assert result.recoverable_errors == []


def test_duplicate_fix_resending_the_same_ids_is_not_a_change():
    dup = error(1, "duplicate", email="one@acme.test", person_id="P-2", employee_id="E-2")

    resent = validate_fixes([dup], [RowFix(row_index=1, fixes={"person_id": "P-2", "employee_id": "E-2"})])
    assert resent.ready_for_retry is False

    changed = validate_fixes([dup], [RowFix(row_index=1, fixes={"person_id": "P-2", "employee_id": "E-3"})])
    assert changed.ready_for_retry is True


def test_write_errors_carry_the_row_identifiers(import_engine, ctx):
    first = import_engine.execute(ctx, file_with_duplicate())
    dup = first.recoverable_errors[0]
    assert (dup.person_id, dup.email) == ("P-2", "one@acme.test")


def test_fixed_role_is_normalized_like_the_file(import_engine, ctx, db_session):
    data = csv_bytes([member_row(email="boss@acme.test", personId="P-BOSS", role="Owner")])
    first = import_engine.execute(ctx, data)
    assert first.recoverable_errors[0].kind == "validation"

    fixes = [RowFix(row_index=0, fixes={"role": "Manager"})]
    assert validate_fixes(first.recoverable_errors, fixes).ready_for_retry is True

    retry = import_engine.retry_failed_rows(ctx, data, first.recoverable_errors, fixes)
    assert retry.created == 1
    stored = db_session.execute(select(Member).where(Member.person_id == "P-BOSS")).scalar_one()
    assert stored.role == "manager"


def test_fix_with_an_unknown_role_is_invalid():
    result = validate_fixes(
        [error(0, "validation", message="Invalid role 'owner' (must be member, manager, or admin)")],
        [RowFix(row_index=0, fixes={"role": "Chief"})],
    )
    assert result.invalid_fixes[0].error == "Invalid role 'chief'"
