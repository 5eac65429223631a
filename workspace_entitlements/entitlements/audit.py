"""
Entitlement audit trail.

Provides:
- EntitlementAuditLogger.record(): persists an EntitlementLog row for every
  lifecycle transition and mirrors it to the "entitlements.audit" logger
- EntitlementAuditLogger.log_denial(): structured log line for can()
  denials, aggregated per (workspace, feature) to avoid flooding

Log rows are added to the caller's session and committed with the state
change they describe, never on their own.
"""

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from workspace_entitlements.entitlements.result import EntitlementResult
from workspace_entitlements.models.entitlement_log import (
    EntitlementAction,
    EntitlementLog,
    EntitlementSource,
    EntityType,
)

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")

DEFAULT_DENIAL_AGGREGATION_SECONDS = 60


class EntitlementAuditLogger:
    """Writes entitlement audit rows and denial events."""

    def __init__(self, aggregation_window_seconds: int = DEFAULT_DENIAL_AGGREGATION_SECONDS):
        self._aggregation_window_seconds = aggregation_window_seconds
        self._recent_denials: Dict[str, float] = {}
        self._aggregation_lock = Lock()

    def record(
        self,
        db: Session,
        workspace_id: str,
        action: EntitlementAction,
        entity_type: EntityType,
        entity_id: Optional[str] = None,
        source: EntitlementSource = EntitlementSource.SYSTEM,
        user_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> EntitlementLog:
        """Add an EntitlementLog row to the session (caller commits)."""
        entry = EntitlementLog(
            workspace_id=workspace_id,
            action=EntitlementAction(action).value,
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            source=EntitlementSource(source).value,
            user_id=user_id,
            old_values=old_values,
            new_values=new_values,
            extra_metadata=metadata or None,
        )
        if created_at is not None:
            entry.created_at = created_at
        db.add(entry)

        audit_logger.info(
            "entitlement_change",
            extra={
                "event_type": "entitlement_change",
                "workspace_id": workspace_id,
                "action": entry.action,
                "entity_type": entry.entity_type,
                "entity_id": entity_id,
                "source": entry.source,
                "user_id": user_id,
                "audit_metadata": metadata,
            },
        )
        return entry

    def log_denial(self, workspace_id: str, result: EntitlementResult) -> None:
        """Log a can() denial, at most once per window per (workspace, feature)."""
        key = f"{workspace_id}:{result.feature_code}"
        if not self._check_aggregation(key):
            return

        audit_logger.warning(
            "access_denied",
            extra={
                "event_type": "access_denied",
                "workspace_id": workspace_id,
                "feature_code": result.feature_code,
                "reason": result.reason,
                "limit": result.limit,
                "used": result.used,
            },
        )

    def _check_aggregation(self, key: str) -> bool:
        """False if this key was logged within the aggregation window."""
        now = datetime.now(timezone.utc).timestamp()

        with self._aggregation_lock:
            cutoff = now - self._aggregation_window_seconds
            self._recent_denials = {
                k: v for k, v in self._recent_denials.items() if v > cutoff
            }
            if key in self._recent_denials:
                return False
            self._recent_denials[key] = now
            return True


_audit_logger_instance: Optional[EntitlementAuditLogger] = None
_audit_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Get the process-wide audit logger (shares the denial aggregation window)."""
    global _audit_logger_instance
    if _audit_logger_instance is None:
        with _audit_lock:
            if _audit_logger_instance is None:
                _audit_logger_instance = EntitlementAuditLogger()
    return _audit_logger_instance
