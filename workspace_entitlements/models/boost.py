"""
Boost model - a per-workspace, per-feature top-up.

Boosts extend a feature's limit (add_limit) or lift it entirely
(unlimited). Duration decides when a boost stops counting:
- permanent: until cancelled
- cycle_bound: until the billing cycle it was granted in ends
- duration: until expires_at

Status transitions:
    active -> expired   (automatic, reset job)
    active -> cancelled (manual)
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, Integer, Index, JSON

from workspace_entitlements.models.base import (
    Base,
    TimestampMixin,
    WorkspaceScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
    as_utc,
)


class BoostType(str, Enum):
    ADD_LIMIT = "add_limit"
    UNLIMITED = "unlimited"


class BoostDuration(str, Enum):
    PERMANENT = "permanent"
    CYCLE_BOUND = "cycle_bound"
    DURATION = "duration"


class BoostStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Boost(Base, TimestampMixin, WorkspaceScopedMixin):
    """Feature top-up held by a workspace."""

    __tablename__ = "boosts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    feature_code = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Feature this boost applies to"
    )
    boost_type = Column(
        String(20),
        nullable=False,
        default=BoostType.ADD_LIMIT.value,
        comment="add_limit | unlimited"
    )
    duration_type = Column(
        String(20),
        nullable=False,
        default=BoostDuration.PERMANENT.value,
        comment="permanent | cycle_bound | duration"
    )
    limit_value = Column(
        Integer,
        nullable=True,
        comment="Extra allowance for add_limit boosts"
    )
    consumed_quantity = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Portion of limit_value already consumed"
    )
    status = Column(
        String(20),
        nullable=False,
        default=BoostStatus.ACTIVE.value,
        index=True,
    )
    starts_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )
    expires_at = Column(
        UTCDateTime,
        nullable=True,
    )
    external_addon_id = Column(
        String(255),
        nullable=True,
        comment="Billing system add-on reference"
    )
    extra_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_boosts_workspace_feature_status", "workspace_id", "feature_code", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Boost(workspace_id={self.workspace_id}, feature_code={self.feature_code}, "
            f"type={self.boost_type}, duration={self.duration_type}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == BoostStatus.ACTIVE.value

    @property
    def is_unlimited(self) -> bool:
        return self.boost_type == BoostType.UNLIMITED.value

    @property
    def remaining_limit(self) -> Optional[int]:
        """Unconsumed allowance; None for unlimited boosts."""
        if self.is_unlimited:
            return None
        return max(0, (self.limit_value or 0) - (self.consumed_quantity or 0))

    def is_usable(self, now: Optional[datetime] = None, cycle_start: Optional[datetime] = None) -> bool:
        """
        Whether the boost contributes to the feature right now.

        cycle_bound boosts additionally require being granted within the
        current cycle; the reset job expires them at the boundary, this
        check keeps them from counting if the job has not yet run.
        """
        now = as_utc(now) if now else utcnow()
        if not self.is_active:
            return False
        if self.starts_at is not None and as_utc(self.starts_at) > now:
            return False
        if self.expires_at is not None and as_utc(self.expires_at) <= now:
            return False
        if (
            self.duration_type == BoostDuration.CYCLE_BOUND.value
            and cycle_start is not None
            and self.starts_at is not None
            and as_utc(self.starts_at) < as_utc(cycle_start)
        ):
            return False
        return True

    def expire(self) -> None:
        if not self.is_active:
            raise ValueError(f"Cannot expire boost in status {self.status}")
        self.status = BoostStatus.EXPIRED.value

    def cancel(self) -> None:
        if not self.is_active:
            raise ValueError(f"Cannot cancel boost in status {self.status}")
        self.status = BoostStatus.CANCELLED.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "feature_code": self.feature_code,
            "boost_type": self.boost_type,
            "duration_type": self.duration_type,
            "limit_value": self.limit_value,
            "remaining_limit": self.remaining_limit,
            "status": self.status,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
