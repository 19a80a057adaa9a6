from sqlalchemy import JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase

# Native UUID/JSONB on PostgreSQL, portable fallbacks elsewhere (tests run on SQLite)
GUID = Uuid(as_uuid=True).with_variant(UUID(as_uuid=True), "postgresql")
JSONDoc = JSON().with_variant(JSONB(), "postgresql")

class Base(DeclarativeBase):
    pass

# Import models so Alembic can discover them
from provisioning.models import *  # noqa
