"""
EntitlementLog model - append-only audit trail of entitlement state changes.

One row per lifecycle transition (package provisioned / suspended /
reactivated / cancelled, boost provisioned / expired / cancelled, billing
cycle reset). Rows are never updated.
"""

from enum import Enum

from sqlalchemy import Column, String, Index, JSON

from workspace_entitlements.models.base import (
    Base,
    WorkspaceScopedMixin,
    UTCDateTime,
    generate_uuid,
    utcnow,
)


class EntitlementAction(str, Enum):
    PACKAGE_PROVISIONED = "package.provisioned"
    PACKAGE_SUSPENDED = "package.suspended"
    PACKAGE_REACTIVATED = "package.reactivated"
    PACKAGE_CANCELLED = "package.cancelled"
    BOOST_PROVISIONED = "boost.provisioned"
    BOOST_EXPIRED = "boost.expired"
    BOOST_CANCELLED = "boost.cancelled"
    CYCLE_RESET = "cycle.reset"


class EntitlementSource(str, Enum):
    """Who initiated the change."""
    SYSTEM = "system"
    API = "api"
    BILLING = "billing"
    ADMIN = "admin"
    USER = "user"


class EntityType(str, Enum):
    WORKSPACE_PACKAGE = "workspace_package"
    BOOST = "boost"
    WORKSPACE = "workspace"


class EntitlementLog(Base, WorkspaceScopedMixin):
    """Audit row for one entitlement transition."""

    __tablename__ = "entitlement_logs"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    action = Column(
        String(50),
        nullable=False,
        index=True,
        comment="Dotted action name (package.provisioned, cycle.reset)"
    )
    entity_type = Column(
        String(50),
        nullable=False,
        comment="workspace_package | boost | workspace"
    )
    entity_id = Column(
        String(36),
        nullable=True,
        comment="Affected row id (NULL for workspace-level actions)"
    )
    source = Column(
        String(20),
        nullable=False,
        default=EntitlementSource.SYSTEM.value,
    )
    user_id = Column(
        String(255),
        nullable=True,
    )
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    extra_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
        comment="Action-specific detail (reason, cycle_start, ...)"
    )

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        index=True,
    )

    __table_args__ = (
        Index("ix_entitlement_logs_workspace_action", "workspace_id", "action"),
    )

    def __repr__(self) -> str:
        return f"<EntitlementLog(workspace_id={self.workspace_id}, action={self.action}, entity_id={self.entity_id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "source": self.source,
            "user_id": self.user_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "metadata": self.extra_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
