from provisioning.schemas.imports import CandidateRow
from provisioning.services.directory import SqlAlchemyDirectory, resolve_row

from tests.helpers import create_company, create_member


def make_row(**values) -> CandidateRow:
    return CandidateRow(index=0, line_number=2, name="Row", **values)


def test_email_match_wins_over_person_id(db_session, company):
    by_email = create_member(db_session, company, email="a@acme.test", person_id="P-A")
    create_member(db_session, company, email="b@acme.test", person_id="P-B")

    found = SqlAlchemyDirectory(db_session).find_existing(
        company.id, {"email": "a@acme.test", "person_id": "P-B"}
    )
    assert found.id == by_email.id


def test_lookup_is_scoped_to_the_company(db_session, company):
    other = create_company(db_session, "OTHER", "Other Co")
    create_member(db_session, other, email="a@acme.test", person_id="P-A")

    directory = SqlAlchemyDirectory(db_session)
    assert directory.find_existing(company.id, {"email": "a@acme.test"}) is None
    assert directory.find_existing(other.id, {"email": "a@acme.test"}) is not None


def test_manager_lookup_ignores_plain_members(db_session, company):
    create_member(db_session, company, email="m@acme.test", person_id="P-M", role="member")
    boss = create_member(db_session, company, email="boss@acme.test", person_id="P-BOSS", role="manager")

    directory = SqlAlchemyDirectory(db_session)
    assert directory.find_manager(company.id, {"person_id": "P-M"}) is None
    assert directory.find_manager(company.id, {"person_id": "P-BOSS"}).id == boss.id


def test_resolve_row_classifies_create_and_update(db_session, company):
    existing = create_member(db_session, company, username="jdoe", person_id="P-1")
    directory = SqlAlchemyDirectory(db_session)

    update = make_row(username="jdoe", person_id="P-1")
    resolve_row(directory, company.id, update)
    assert update.action == "update"
    assert update.existing_id == existing.id

    create = make_row(username="newbie", person_id="P-2")
    resolve_row(directory, company.id, create)
    assert create.action == "create"
    assert create.existing_id is None


def test_resolve_row_flags_unknown_manager(db_session, company):
    directory = SqlAlchemyDirectory(db_session)

    row = make_row(email="x@acme.test", person_id="P-X", manager_person_id="NOPE")
    resolve_row(directory, company.id, row)
    assert row.manager_found is False

    no_manager = make_row(email="y@acme.test", person_id="P-Y")
    resolve_row(directory, company.id, no_manager)
    assert no_manager.manager_found is True
