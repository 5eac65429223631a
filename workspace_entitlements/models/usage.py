"""
Usage tracking model for metered features.

UsageRecord: append-only consumption log. Rows are never updated or
deleted by this package; reset windows are computed at query time.
"""

from sqlalchemy import Column, String, Integer, Index, JSON, CheckConstraint

from workspace_entitlements.models.base import (
    Base,
    WorkspaceScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class UsageRecord(Base, WorkspaceScopedMixin):
    """
    One consumption event for a metered feature.

    HIGH VOLUME TABLE - written on every metered action.

    NOTE: Does not include TimestampMixin to reduce storage (uses recorded_at).
    """

    __tablename__ = "usage_records"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    feature_code = Column(
        String(100),
        nullable=False,
        comment="Feature consumed"
    )
    quantity = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Units consumed (>= 1)"
    )
    user_id = Column(
        String(255),
        nullable=True,
        comment="User who performed the metered action"
    )
    extra_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
    )

    recorded_at = Column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_usage_records_quantity_positive"),
        Index("ix_usage_records_workspace_feature_time", "workspace_id", "feature_code", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(workspace_id={self.workspace_id}, feature_code={self.feature_code}, quantity={self.quantity})>"
