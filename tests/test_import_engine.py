import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from provisioning.models.import_audit import ACTION_EXECUTE, ACTION_PREVIEW, ImportAuditEntry
from provisioning.models.member import Member
from provisioning.schemas.imports import Created, FieldUpdated, UpsertOptions
from provisioning.services.errors import ImportAborted
from provisioning.services.import_engine import EngineConfig, ImportEngine
from provisioning.services.validation import MSG_MISSING_PERSON_ID, MSG_PASSWORD_LENGTH

from tests.helpers import UnreachableStoreDirectory, create_member, csv_bytes, member_row


def members(db):
    return {m.person_id: m for m in db.execute(select(Member)).scalars()}


def three_rows() -> bytes:
    return csv_bytes(
        [
            member_row(name="One", email="one@acme.test", personId="P-1"),
            member_row(name="Two", email="one@acme.test", personId="P-2"),
            member_row(name="Three", email="three@acme.test", personId="P-3", password="weak"),
        ]
    )


def test_preview_counts_and_journal_entry(import_engine, ctx, db_session, company):
    create_member(db_session, company, email="known@acme.test", person_id="P-KNOWN")
    data = csv_bytes(
        [
            member_row(email="known@acme.test", personId="P-KNOWN", password="KEEP_EXISTING"),
            member_row(email="new@acme.test", personId="P-NEW"),
            member_row(email="bad@acme.test", personId=""),
        ]
    )
    result = import_engine.preview(ctx, data)

    assert result.success is True
    assert (result.total_rows, result.valid_rows, result.invalid_rows) == (3, 2, 1)
    assert (result.create_count, result.update_count) == (1, 1)
    assert result.rows[2].validation_errors == [MSG_MISSING_PERSON_ID]

    entry = db_session.get(ImportAuditEntry, result.audit_entry_id)
    assert entry.action == ACTION_PREVIEW
    assert entry.event_metadata["file_name"] == "members.csv"
    assert entry.event_metadata["valid_rows"] == 2


def test_preview_never_writes_members(import_engine, ctx, db_session):
    import_engine.preview(ctx, csv_bytes([member_row()]))
    assert set(members(db_session)) == {"ADM-0001"}


def test_preview_of_malformed_file(import_engine, ctx):
    result = import_engine.preview(ctx, b"department,shift\nOps,Night\n")
    assert result.success is False
    assert result.global_errors == ["Failed to parse file"]
    assert result.parse_errors
    assert result.rows == []
    assert result.audit_entry_id is not None


def test_execute_matches_preview_counts(import_engine, ctx, db_session, company):
    create_member(db_session, company, email="known@acme.test", person_id="P-KNOWN")
    data = csv_bytes(
        [
            member_row(email="known@acme.test", personId="P-KNOWN", department="Finance"),
            member_row(email="a@acme.test", personId="P-A"),
            member_row(email="b@acme.test", personId="P-B"),
        ]
    )
    preview = import_engine.preview(ctx, data)
    result = import_engine.execute(ctx, data)

    assert (result.created, result.updated) == (preview.create_count, preview.update_count)
    assert result.success is True
    assert result.partial_success is False
    assert result.message == "Import completed: 2 created, 1 updated"


def test_reusing_the_preview_gives_the_same_outcome(import_engine, ctx):
    data = csv_bytes([member_row(email="a@acme.test", personId="P-A")])
    preview = import_engine.preview(ctx, data)
    result = import_engine.execute(ctx, data, UpsertOptions(), preview=preview)
    assert result.created == 1


def test_duplicate_and_weak_credential_example(import_engine, ctx, db_session, hasher):
    result = import_engine.execute(ctx, three_rows(), UpsertOptions(auto_fix_credentials=True))

    assert (result.created, result.updated, result.failed) == (2, 0, 1)
    assert result.success is True
    assert result.partial_success is True
    assert len(result.recoverable_errors) == 1
    duplicate = result.recoverable_errors[0]
    assert duplicate.kind == "duplicate"
    assert duplicate.row_index == 1
    assert duplicate.name == "Two"

    stored = members(db_session)
    assert "P-2" not in stored
    # The weak password was replaced, never stored
    assert stored["P-3"].password_hash
    assert not hasher.verify(stored["P-3"].password_hash, "weak")


def test_counts_always_add_up(import_engine, ctx):
    result = import_engine.execute(ctx, three_rows(), UpsertOptions(auto_fix_credentials=True))
    assert result.created + result.updated + result.failed == result.total_rows_processed


def test_weak_credential_rows_are_skipped_without_auto_fix(import_engine, ctx):
    result = import_engine.execute(ctx, three_rows())

    assert (result.created, result.failed, result.skipped) == (1, 1, 1)
    kinds = sorted(e.kind for e in result.recoverable_errors)
    assert kinds == ["duplicate", "weak_credential"]
    skipped = next(e for e in result.recoverable_errors if e.kind == "weak_credential")
    assert skipped.row_index == 2
    assert MSG_PASSWORD_LENGTH in skipped.message


def test_execution_journal_entry_holds_the_change_set(import_engine, ctx, db_session, company):
    known = create_member(db_session, company, email="known@acme.test", person_id="P-KNOWN", department="Ops")
    data = csv_bytes(
        [
            member_row(name=known.name, email="known@acme.test", personId="P-KNOWN", department="Finance", password="KEEP_EXISTING"),
            member_row(email="a@acme.test", personId="P-A"),
        ]
    )
    result = import_engine.execute(ctx, data)

    entry = db_session.get(ImportAuditEntry, result.audit_entry_id)
    assert entry.action == ACTION_EXECUTE
    assert entry.actor_id == ctx.actor_id
    assert entry.event_metadata["created"] == 1
    assert entry.event_metadata["updated"] == 1
    assert entry.event_metadata["total_rows_processed"] == 2

    facts = import_engine.journal.change_facts(entry)
    assert FieldUpdated(record_id=known.id, field="department", old_value="Ops", new_value="Finance") in facts
    assert sum(isinstance(f, Created) for f in facts) == 1


def test_abort_keeps_committed_rows_and_still_journals(import_engine, ctx, db_session):
    with pytest.raises(ImportAborted) as excinfo:
        import_engine.execute(ctx, three_rows(), UpsertOptions(skip_on_error=False, auto_fix_credentials=True))

    result = excinfo.value.result
    assert result.success is False
    assert (result.created, result.failed) == (1, 1)
    assert result.message.startswith("Import aborted")

    stored = members(db_session)
    assert "P-1" in stored
    assert "P-3" not in stored

    entry = db_session.get(ImportAuditEntry, result.audit_entry_id)
    assert entry.event_metadata["aborted"] is True
    assert entry.event_metadata["created"] == 1


def test_all_rows_failing_is_not_a_success(import_engine, ctx, db_session, company):
    create_member(db_session, company, email="a@acme.test", username="alice", person_id="P-A")
    create_member(db_session, company, email="b@acme.test", username="bob", person_id="P-B")
    # Matches alice by email, then tries to take bob's username
    data = csv_bytes([member_row(email="a@acme.test", username="bob", personId="P-A", password="KEEP_EXISTING")])
    result = import_engine.execute(ctx, data)

    assert (result.created, result.updated, result.failed) == (0, 0, 1)
    assert result.recoverable_errors[0].kind == "duplicate"
    assert result.success is False
    assert result.message.startswith("Import failed")


def test_create_new_false_only_updates(import_engine, ctx, db_session, company):
    create_member(db_session, company, email="known@acme.test", person_id="P-KNOWN")
    data = csv_bytes(
        [
            member_row(email="known@acme.test", personId="P-KNOWN", department="Finance"),
            member_row(email="new@acme.test", personId="P-NEW"),
        ]
    )
    result = import_engine.execute(ctx, data, UpsertOptions(create_new=False))

    assert (result.created, result.updated, result.skipped) == (0, 1, 1)
    assert "P-NEW" not in members(db_session)


def test_execute_rejects_malformed_file_without_journal_entry(import_engine, ctx, db_session):
    result = import_engine.execute(ctx, b"")
    assert result.success is False
    assert result.message == "File validation failed"
    assert result.audit_entry_id is None
    assert db_session.execute(select(ImportAuditEntry)).first() is None


def test_unknown_manager_only_drops_the_link(import_engine, ctx, db_session):
    data = csv_bytes([member_row(email="new@acme.test", personId="P-NEW", managerPersonId="NOPE")])

    preview = import_engine.preview(ctx, data)
    assert preview.valid_rows == 0
    assert preview.create_count == 1

    result = import_engine.execute(ctx, data, UpsertOptions(continue_on_validation_error=True))
    assert (result.created, result.failed, result.skipped) == (1, 0, 0)
    assert members(db_session)["P-NEW"].manager_id is None


def test_unknown_manager_is_skipped_when_not_continuing(import_engine, ctx, db_session):
    data = csv_bytes([member_row(email="new@acme.test", personId="P-NEW", managerPersonId="NOPE")])
    result = import_engine.execute(ctx, data, UpsertOptions(continue_on_validation_error=False))

    assert (result.created, result.skipped) == (0, 1)
    assert result.recoverable_errors[0].kind == "manager_not_found"
    assert "P-NEW" not in members(db_session)


def test_blank_password_on_update_keeps_the_stored_credential(import_engine, ctx, db_session, company, hasher):
    known = create_member(
        db_session, company, email="known@acme.test", person_id="P-KNOWN", password="Orig1nalPass!"
    )
    data = csv_bytes([member_row(name=known.name, email="known@acme.test", personId="P-KNOWN", password="")])
    result = import_engine.execute(ctx, data, UpsertOptions(auto_fix_credentials=True))
    assert result.updated == 1

    db_session.refresh(known)
    assert hasher.verify(known.password_hash, "Orig1nalPass!")
    entry = db_session.get(ImportAuditEntry, result.audit_entry_id)
    assert not any(getattr(f, "is_credential", False) for f in import_engine.journal.change_facts(entry))


def store_outage_rows() -> bytes:
    return csv_bytes(
        [
            member_row(email="a@acme.test", personId="P-A"),
            member_row(email="down@acme.test", personId="P-DOWN"),
            member_row(email="c@acme.test", personId="P-C"),
        ]
    )


def outage_engine(db_session, hasher) -> ImportEngine:
    return ImportEngine(
        db_session, config=EngineConfig(), hasher=hasher, directory=UnreachableStoreDirectory(db_session)
    )


def test_critical_row_failure_is_collected_when_skipping(db_session, hasher, ctx):
    result = outage_engine(db_session, hasher).execute(ctx, store_outage_rows())

    assert (result.created, result.failed) == (2, 1)
    assert result.recoverable_errors == []
    critical = result.critical_errors[0]
    assert critical.kind == "store_unavailable"
    assert critical.requires_operator_action is True
    assert critical.row_index == 1
    assert {"P-A", "P-C"} <= set(members(db_session))


def test_critical_row_failure_aborts_when_not_skipping(db_session, hasher, ctx):
    with pytest.raises(ImportAborted) as excinfo:
        outage_engine(db_session, hasher).execute(ctx, store_outage_rows(), UpsertOptions(skip_on_error=False))

    result = excinfo.value.result
    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert [e.kind for e in result.critical_errors] == ["store_unavailable"]
    assert (result.created, result.failed) == (1, 1)
    assert "P-C" not in members(db_session)
