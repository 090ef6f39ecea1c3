from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import CHAR, Column, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type, otherwise stores the canonical string form
    in a CHAR(36) column.
    """

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def created_at_column() -> Column:
    return Column(DateTime(timezone=True), default=utcnow, nullable=False)


def updated_at_column() -> Column:
    return Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
