"""Base SQLAlchemy model with UUID primary key and timestamps."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in the test suite). None is SQL NULL.
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    Drivers without native timezone support hand back naive values; those are
    re-tagged as UTC so comparisons against ``Clock.now()`` never mix naive and
    aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


class BaseModel(Base):
    """Base model with UUID primary key and timestamps."""

    __abstract__ = True

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    created_at = Column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        UTCDateTime(),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
