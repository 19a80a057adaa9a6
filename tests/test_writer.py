import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from provisioning.models.member import Member
from provisioning.schemas.imports import KEEP_EXISTING, CandidateRow, Created, FieldUpdated
from provisioning.services.directory import SqlAlchemyDirectory, resolve_row
from provisioning.services.errors import RecordNotFoundError, WeakCredentialError
from provisioning.services.writer import TransactionalWriter

from tests.helpers import create_member


def resolved(db, company, **values) -> CandidateRow:
    data = {"index": 0, "line_number": 2, "name": "Jane Doe", "role": "member"}
    data.update(values)
    row = CandidateRow(**data)
    resolve_row(SqlAlchemyDirectory(db), company.id, row)
    return row


def write(db, company, row, hashed=None, selected_fields=None):
    return TransactionalWriter(SqlAlchemyDirectory(db)).write(company.id, row, hashed, selected_fields)


def test_office_create_stores_the_hash(db_session, company, hasher):
    row = resolved(db_session, company, email="jane@acme.test", person_id="P-1", password="Str0ngPassw0rd")
    result = write(db_session, company, row, hasher.hash("Str0ngPassw0rd"))

    member = db_session.get(Member, result.record_id)
    assert result.outcome == "created"
    assert result.changes == [Created(record_id=member.id)]
    assert hasher.verify(member.password_hash, "Str0ngPassw0rd")
    assert member.pin_code is None
    assert member.login_method == "email"


def test_operational_create_stores_the_pin(db_session, company):
    row = resolved(
        db_session, company, username="op1", person_id="P-2", worker_type="operational", password="4321"
    )
    member = db_session.get(Member, write(db_session, company, row).record_id)

    assert member.pin_code == "4321"
    assert member.password_hash is None
    assert member.requires_pin_only is True
    assert member.login_method == "username"


def test_create_links_the_manager(db_session, company, admin):
    row = resolved(
        db_session,
        company,
        email="jane@acme.test",
        person_id="P-1",
        password="Str0ngPassw0rd",
        manager_person_id=admin.person_id,
    )
    member = db_session.get(Member, write(db_session, company, row, "hash").record_id)
    assert member.manager_id == admin.id


def test_create_without_a_credential_is_rejected(db_session, company):
    row = resolved(db_session, company, email="jane@acme.test", person_id="P-1", password=None)
    with pytest.raises(WeakCredentialError):
        write(db_session, company, row)
    assert db_session.execute(select(Member)).first() is None


def test_update_records_only_changed_fields(db_session, company):
    member = create_member(db_session, company, email="jane@acme.test", person_id="P-1", department="Ops")
    row = resolved(
        db_session,
        company,
        name=member.name,
        email="jane@acme.test",
        person_id="P-1",
        department="Finance",
        position=None,
        password=KEEP_EXISTING,
    )
    result = write(db_session, company, row)

    assert result.outcome == "updated"
    assert result.changes == [
        FieldUpdated(record_id=member.id, field="department", old_value="Ops", new_value="Finance")
    ]
    db_session.refresh(member)
    assert member.department == "Finance"


def test_unchanged_row_is_still_an_update(db_session, company):
    member = create_member(db_session, company, email="jane@acme.test", person_id="P-1")
    row = resolved(db_session, company, name=member.name, email="jane@acme.test", person_id="P-1", password=KEEP_EXISTING)

    result = write(db_session, company, row)
    assert result.outcome == "updated"
    assert result.changes == []


def test_selected_fields_limit_the_update(db_session, company):
    member = create_member(db_session, company, email="jane@acme.test", person_id="P-1", department="Ops")
    row = resolved(
        db_session,
        company,
        name="Renamed",
        email="jane@acme.test",
        person_id="P-1",
        department="Finance",
        password=KEEP_EXISTING,
    )
    result = write(db_session, company, row, selected_fields=["department"])

    assert [c.field for c in result.changes] == ["department"]
    db_session.refresh(member)
    assert member.name == "Member"


def test_credential_change_is_masked_in_the_change_set(db_session, company, hasher):
    member = create_member(db_session, company, email="jane@acme.test", person_id="P-1")
    row = resolved(db_session, company, name=member.name, email="jane@acme.test", person_id="P-1", password="N3wPassword!")

    result = write(db_session, company, row, hasher.hash("N3wPassword!"))
    fact = result.changes[-1]
    assert fact.is_credential
    assert fact.old_value == "***"
    assert "N3wPassword!" not in str(fact.new_value)

    db_session.refresh(member)
    assert hasher.verify(member.password_hash, "N3wPassword!")


def test_update_of_a_vanished_member(db_session, company):
    row = CandidateRow(index=0, line_number=2, name="Ghost", action="update", person_id="P-404")
    with pytest.raises(RecordNotFoundError):
        write(db_session, company, row)


def test_failed_row_rolls_back_alone(db_session, company, hasher):
    first = resolved(db_session, company, email="jane@acme.test", person_id="P-1", password="Str0ngPassw0rd")
    write(db_session, company, first, hasher.hash("Str0ngPassw0rd"))

    clash = CandidateRow(
        index=1, line_number=3, name="Clash", role="member", email="jane@acme.test", person_id="P-2", password="Str0ngPassw0rd"
    )
    with pytest.raises(IntegrityError):
        write(db_session, company, clash, hasher.hash("Str0ngPassw0rd"))

    person_ids = db_session.execute(select(Member.person_id)).scalars().all()
    assert person_ids == ["P-1"]
