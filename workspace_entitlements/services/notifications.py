"""
Notification hooks for entitlement events.

Delivery mechanics (email, in-app, chat) belong to the host application.
This module defines what the engine hands over and ships two senders:
- LoggingEntitlementNotifier (default): structured log line per event
- RecordingEntitlementNotifier (testing): keeps events in memory
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class UsageAlertNotification:
    """A workspace crossed a usage threshold for a feature."""
    workspace_id: str
    owner_id: Optional[str]
    feature_code: str
    feature_name: str
    threshold: int
    used: int
    limit: int
    percentage: float
    sent_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BoostExpiryNotification:
    """One or more boosts of a workspace were expired."""
    workspace_id: str
    owner_id: Optional[str]
    boost_ids: List[str]
    feature_codes: List[str]
    reason: str
    sent_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EntitlementNotifier(ABC):
    """Abstract base class for entitlement notification delivery."""

    @abstractmethod
    def send_usage_alert(self, notification: UsageAlertNotification) -> bool:
        """
        Deliver a usage threshold alert.

        Returns:
            True on success, False on failure
        """

    @abstractmethod
    def send_boost_expiry(self, notification: BoostExpiryNotification) -> bool:
        """
        Deliver a boost expiry notice.

        Returns:
            True on success, False on failure
        """


class LoggingEntitlementNotifier(EntitlementNotifier):
    """Logs notifications; used when the host wires no delivery channel."""

    def send_usage_alert(self, notification: UsageAlertNotification) -> bool:
        logger.info(
            "Usage alert",
            extra={"event_type": "usage_alert", **notification.to_dict()},
        )
        return True

    def send_boost_expiry(self, notification: BoostExpiryNotification) -> bool:
        logger.info(
            "Boosts expired",
            extra={"event_type": "boost_expiry", **notification.to_dict()},
        )
        return True


class RecordingEntitlementNotifier(EntitlementNotifier):
    """Keeps every notification in memory for assertions."""

    def __init__(self):
        self.usage_alerts: List[UsageAlertNotification] = []
        self.boost_expiries: List[BoostExpiryNotification] = []

    def send_usage_alert(self, notification: UsageAlertNotification) -> bool:
        self.usage_alerts.append(notification)
        return True

    def send_boost_expiry(self, notification: BoostExpiryNotification) -> bool:
        self.boost_expiries.append(notification)
        return True
