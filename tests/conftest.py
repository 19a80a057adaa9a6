import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PASSWORD_HASH_METHOD", "pbkdf2:sha256:1000")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from provisioning.main import app
from provisioning.db.base import Base
from provisioning.db.session import get_db
from provisioning.services.hashing import WerkzeugCredentialHasher
from provisioning.services.import_engine import EngineConfig, ImportContext, ImportEngine

from tests.helpers import create_company, create_member

# One in-memory database shared by every connection (and the TestClient thread)
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

TEST_HASH_METHOD = "pbkdf2:sha256:1000"


@pytest.fixture()
def db_session():
    """Fresh schema per test; application code commits freely."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def override_get_db(db_session):
    def _get_db_override():
        yield db_session

    app.dependency_overrides[get_db] = _get_db_override
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def hasher():
    return WerkzeugCredentialHasher(TEST_HASH_METHOD)


@pytest.fixture()
def import_engine(db_session, hasher):
    return ImportEngine(db_session, config=EngineConfig(), hasher=hasher)


@pytest.fixture()
def company(db_session):
    return create_company(db_session, "ACME", "Acme Inc")


@pytest.fixture()
def admin(db_session, company):
    return create_member(
        db_session, company, name="Ada Admin", email="admin@acme.test", role="admin", person_id="ADM-0001"
    )


@pytest.fixture()
def ctx(company, admin):
    return ImportContext(company_id=company.id, actor_id=admin.id, file_name="members.csv")
