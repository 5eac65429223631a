"""
Base mixins for entitlement models.

Provides common functionality:
- UTCDateTime: timezone-aware datetime column that always round-trips as UTC
- TimestampMixin: created_at, updated_at timestamps
- WorkspaceScopedMixin: workspace_id for per-workspace isolation
- generate_uuid / utcnow: defaults for primary keys and timestamps
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, func, TypeDecorator
from sqlalchemy.orm import declared_attr

from workspace_entitlements.db_base import Base  # noqa: F401 - re-exported for models


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored in UTC.

    PostgreSQL keeps the offset natively; SQLite drops it. Values are
    normalised to UTC on write and re-tagged as UTC on read so that
    comparisons against datetime.now(timezone.utc) work on every backend.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return as_utc(value)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Timestamp when record was last updated"
    )


class WorkspaceScopedMixin:
    """
    Mixin that adds workspace_id column for per-workspace isolation.

    Every query against a scoped table MUST filter on workspace_id.
    """

    @declared_attr
    def workspace_id(cls):
        return Column(
            String(255),
            nullable=False,
            index=True,
            comment="Owning workspace identifier"
        )
