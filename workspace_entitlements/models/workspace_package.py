"""
WorkspacePackage model - a package held by a workspace.

Status transitions:
    active <-> suspended
    active | suspended -> cancelled (terminal)

Rows are never reused: provisioning the same package again creates a new
row, so the table doubles as the workspace's package history.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship

from workspace_entitlements.entitlements import billing_cycle
from workspace_entitlements.models.base import (
    Base,
    TimestampMixin,
    WorkspaceScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
    as_utc,
)


class WorkspacePackageStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class WorkspacePackage(Base, TimestampMixin, WorkspaceScopedMixin):
    """Assignment of a package to a workspace."""

    __tablename__ = "workspace_packages"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    package_id = Column(
        String(36),
        ForeignKey("packages.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    status = Column(
        String(20),
        nullable=False,
        default=WorkspacePackageStatus.ACTIVE.value,
        index=True,
        comment="active | suspended | cancelled"
    )

    starts_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Grant is not usable before this instant"
    )
    expires_at = Column(
        UTCDateTime,
        nullable=True,
        comment="Grant is not usable from this instant (NULL = open-ended)"
    )
    billing_cycle_anchor = Column(
        UTCDateTime,
        nullable=True,
        comment="Anchor for monthly reset windows"
    )
    external_service_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing system service reference"
    )
    extra_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
    )

    package = relationship("Package", lazy="joined", innerjoin=True)

    __table_args__ = (
        Index("ix_workspace_packages_workspace_status", "workspace_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<WorkspacePackage(workspace_id={self.workspace_id}, package_id={self.package_id}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == WorkspacePackageStatus.ACTIVE.value

    @property
    def is_base(self) -> bool:
        return bool(self.package and self.package.is_base_package)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """Active, started and not yet expired."""
        now = as_utc(now) if now else utcnow()
        if not self.is_active:
            return False
        if self.starts_at is not None and as_utc(self.starts_at) > now:
            return False
        if self.expires_at is not None and as_utc(self.expires_at) <= now:
            return False
        return True

    def suspend(self) -> None:
        if self.status != WorkspacePackageStatus.ACTIVE.value:
            raise ValueError(f"Cannot suspend package in status {self.status}")
        self.status = WorkspacePackageStatus.SUSPENDED.value

    def reactivate(self) -> None:
        if self.status != WorkspacePackageStatus.SUSPENDED.value:
            raise ValueError(f"Cannot reactivate package in status {self.status}")
        self.status = WorkspacePackageStatus.ACTIVE.value

    def cancel(self, at: Optional[datetime] = None) -> None:
        if self.status == WorkspacePackageStatus.CANCELLED.value:
            raise ValueError("Package is already cancelled")
        self.status = WorkspacePackageStatus.CANCELLED.value
        self.expires_at = at or utcnow()

    @property
    def cycle_anchor(self) -> datetime:
        """billing_cycle_anchor, falling back to starts_at."""
        return as_utc(self.billing_cycle_anchor or self.starts_at or self.created_at)

    def current_cycle_start(self, now: Optional[datetime] = None) -> datetime:
        return billing_cycle.cycle_start(self.cycle_anchor, now or utcnow())

    def current_cycle_end(self, now: Optional[datetime] = None) -> datetime:
        return billing_cycle.cycle_end(self.cycle_anchor, now or utcnow())

    def cycle_index(self, now: Optional[datetime] = None) -> int:
        return billing_cycle.cycle_index(self.cycle_anchor, now or utcnow())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "package_code": self.package.code if self.package else None,
            "status": self.status,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "billing_cycle_anchor": (
                self.billing_cycle_anchor.isoformat() if self.billing_cycle_anchor else None
            ),
            "external_service_id": self.external_service_id,
        }
