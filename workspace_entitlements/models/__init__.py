"""
Database models for the entitlement catalog, workspace grants, usage and audit.

Catalog models (Feature, Package, PackageFeature) are global.
Workspace-scoped models inherit from WorkspaceScopedMixin.
"""

from workspace_entitlements.models.base import TimestampMixin, WorkspaceScopedMixin
from workspace_entitlements.models.feature import Feature, FeatureType, ResetType
from workspace_entitlements.models.package import Package, PackageFeature
from workspace_entitlements.models.workspace_package import (
    WorkspacePackage,
    WorkspacePackageStatus,
)
from workspace_entitlements.models.boost import (
    Boost,
    BoostType,
    BoostDuration,
    BoostStatus,
)
from workspace_entitlements.models.usage import UsageRecord
from workspace_entitlements.models.entitlement_log import (
    EntitlementLog,
    EntitlementAction,
    EntitlementSource,
    EntityType,
)
from workspace_entitlements.models.usage_alert import (
    UsageAlertHistory,
    UsageAlertThreshold,
)

__all__ = [
    "TimestampMixin",
    "WorkspaceScopedMixin",
    "Feature",
    "FeatureType",
    "ResetType",
    "Package",
    "PackageFeature",
    "WorkspacePackage",
    "WorkspacePackageStatus",
    "Boost",
    "BoostType",
    "BoostDuration",
    "BoostStatus",
    "UsageRecord",
    "EntitlementLog",
    "EntitlementAction",
    "EntitlementSource",
    "EntityType",
    "UsageAlertHistory",
    "UsageAlertThreshold",
]
