"""
UsageAlertHistory model - one row per threshold crossing.

An unresolved row means the workspace has been notified for that band and
must not be notified again until the row is resolved (usage dropped below
the band, or an operator resolved it).
"""

from datetime import datetime
from enum import IntEnum
from typing import Optional

from sqlalchemy import Column, String, Integer, Index, JSON

from workspace_entitlements.models.base import (
    Base,
    WorkspaceScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class UsageAlertThreshold(IntEnum):
    WARNING = 80
    CRITICAL = 90
    LIMIT = 100

    @classmethod
    def ascending(cls):
        return sorted(cls, key=int)

    @property
    def label(self) -> str:
        return {80: "warning", 90: "critical", 100: "limit_reached"}[int(self)]


class UsageAlertHistory(Base, WorkspaceScopedMixin):
    """Record of a usage threshold notification."""

    __tablename__ = "usage_alert_history"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    feature_code = Column(
        String(100),
        nullable=False,
    )
    threshold = Column(
        Integer,
        nullable=False,
        comment="80 | 90 | 100"
    )
    extra_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
        comment="used, limit, percentage, notified_user_id"
    )
    notified_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        index=True,
    )
    resolved_at = Column(
        UTCDateTime,
        nullable=True,
        comment="NULL while the alert is open"
    )

    __table_args__ = (
        Index(
            "ix_usage_alert_history_open",
            "workspace_id", "feature_code", "threshold", "resolved_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageAlertHistory(workspace_id={self.workspace_id}, feature_code={self.feature_code}, "
            f"threshold={self.threshold}, resolved={self.resolved_at is not None})>"
        )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolve(self, at: Optional[datetime] = None) -> None:
        if self.resolved_at is None:
            self.resolved_at = at or utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "feature_code": self.feature_code,
            "threshold": self.threshold,
            "metadata": self.extra_metadata,
            "notified_at": self.notified_at.isoformat() if self.notified_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
