import csv
import io

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from provisioning.models.company import Company
from provisioning.models.member import Member
from provisioning.services.directory import SqlAlchemyDirectory

MEMBER_HEADER = [
    "name",
    "email",
    "username",
    "role",
    "department",
    "userType",
    "password",
    "managerPersonId",
    "employeeId",
    "personId",
    "position",
    "shift",
]


def create_company(db: Session, code: str = "ACME", name: str = "Acme Inc") -> Company:
    c = Company(code=code, name=name)
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


def create_member(
    db: Session,
    company: Company,
    *,
    name: str = "Member",
    person_id: str,
    email: str | None = None,
    username: str | None = None,
    role: str = "member",
    worker_type: str = "office",
    password: str = "Sup3rSecret!",
    **extra,
) -> Member:
    m = Member(
        company_id=company.id,
        name=name,
        email=email,
        username=username,
        role=role,
        person_id=person_id,
        worker_type=worker_type,
        password_hash=generate_password_hash(password, method="pbkdf2:sha256:1000"),
        login_method="email" if email else "username",
        **extra,
    )
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


def member_row(**overrides) -> dict:
    row = {
        "name": "Jane Doe",
        "email": "jane@acme.test",
        "username": "",
        "role": "member",
        "department": "Ops",
        "userType": "office",
        "password": "Str0ngPassw0rd",
        "managerPersonId": "",
        "employeeId": "",
        "personId": "P-1001",
        "position": "",
        "shift": "",
    }
    row.update(overrides)
    return row


def csv_bytes(rows: list[dict], header: list[str] | None = None) -> bytes:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=header or MEMBER_HEADER, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue().encode("utf-8")


class UnreachableStoreDirectory(SqlAlchemyDirectory):
    """Fails every insert for person P-DOWN the way a dropped connection does."""

    def insert_member(self, company_id, values):
        if values["person_id"] == "P-DOWN":
            raise OperationalError(
                "INSERT INTO members (id, name) VALUES (?, ?)",
                {},
                Exception("server closed the connection unexpectedly"),
            )
        return super().insert_member(company_id, values)
