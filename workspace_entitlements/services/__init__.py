"""
Services built on the entitlement engine.
"""

from workspace_entitlements.services.notifications import (
    BoostExpiryNotification,
    EntitlementNotifier,
    LoggingEntitlementNotifier,
    RecordingEntitlementNotifier,
    UsageAlertNotification,
)
from workspace_entitlements.services.usage_alert_service import (
    FeatureAlertCheck,
    UsageAlertService,
)

__all__ = [
    "BoostExpiryNotification",
    "EntitlementNotifier",
    "FeatureAlertCheck",
    "LoggingEntitlementNotifier",
    "RecordingEntitlementNotifier",
    "UsageAlertNotification",
    "UsageAlertService",
]
