"""
Usage alert engine.

Checks resolver output against threshold bands and notifies the workspace
owner when usage approaches a limit:
- 80%  (warning)
- 90%  (critical)
- 100% (limit reached)

Each band is alerted at most once while its UsageAlertHistory row stays
unresolved. Rows are resolved when usage falls back below the band (for
example after a billing cycle reset) or when the feature stops having a
numeric limit (upgrade to unlimited, package removed).

Delivery is delegated to an EntitlementNotifier; owner lookup to an
injected owner_resolver(workspace_id) -> Optional[user_id].
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from workspace_entitlements.entitlements.result import EntitlementResult
from workspace_entitlements.entitlements.service import EntitlementService
from workspace_entitlements.models.base import as_utc, utcnow
from workspace_entitlements.models.feature import Feature, FeatureType
from workspace_entitlements.models.usage_alert import UsageAlertHistory, UsageAlertThreshold
from workspace_entitlements.services.notifications import (
    EntitlementNotifier,
    LoggingEntitlementNotifier,
    UsageAlertNotification,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DAYS = 30

OwnerResolver = Callable[[str], Optional[str]]


@dataclass
class FeatureAlertCheck:
    """Outcome of checking one (workspace, feature) pair."""

    workspace_id: str
    feature_code: str
    percentage: Optional[float] = None
    threshold: Optional[int] = None
    alerts_sent: List[int] = field(default_factory=list)
    resolved: int = 0
    skipped_reason: Optional[str] = None

    @property
    def alert_sent(self) -> bool:
        return bool(self.alerts_sent)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["alert_sent"] = self.alert_sent
        return payload


class UsageAlertService:
    """Threshold alerting over EntitlementService results."""

    def __init__(
        self,
        db_session: Session,
        entitlement_service: Optional[EntitlementService] = None,
        notifier: Optional[EntitlementNotifier] = None,
        owner_resolver: Optional[OwnerResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self._clock = clock or utcnow
        self.entitlements = entitlement_service or EntitlementService(db_session, clock=self._clock)
        self.notifier = notifier or LoggingEntitlementNotifier()
        self.owner_resolver = owner_resolver

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_all_workspaces(self) -> Dict[str, int]:
        """
        Check every workspace holding an active package.

        A failing workspace is logged and counted; the run continues.
        """
        stats = {"checked": 0, "alerts_sent": 0, "alerts_resolved": 0, "errors": 0}

        for workspace_id in self.entitlements.list_workspaces_with_active_packages():
            try:
                result = self.check_workspace(workspace_id)
            except Exception as exc:
                self.db.rollback()
                stats["errors"] += 1
                logger.error(
                    "Usage alert check failed for workspace",
                    extra={"workspace_id": workspace_id, "error": str(exc)},
                    exc_info=True,
                )
                continue
            stats["checked"] += 1
            stats["alerts_sent"] += result["alerts_sent"]
            stats["alerts_resolved"] += result["alerts_resolved"]

        logger.info("Usage alert check complete", extra=stats)
        return stats

    def check_workspace(self, workspace_id: str) -> Dict[str, Any]:
        """
        Check every metered feature for one workspace.

        Pooled child features are skipped; their pool feature carries the
        shared limit and is alerted once.
        """
        alerts_sent = 0
        alerts_resolved = 0
        details: List[Dict[str, Any]] = []

        for feature in self._alertable_features():
            check = self.check_feature_usage(workspace_id, feature)
            alerts_sent += len(check.alerts_sent)
            alerts_resolved += check.resolved
            if check.alert_sent or check.resolved:
                details.append(check.to_dict())

        return {
            "workspace_id": workspace_id,
            "alerts_sent": alerts_sent,
            "alerts_resolved": alerts_resolved,
            "details": details,
        }

    def check_feature_usage(self, workspace_id: str, feature: Feature) -> FeatureAlertCheck:
        """Record and send alerts for newly reached bands, resolve bands left behind."""
        check = FeatureAlertCheck(workspace_id=workspace_id, feature_code=feature.code)

        if feature.feature_type in (FeatureType.UNLIMITED, FeatureType.BOOLEAN):
            check.skipped_reason = f"{feature.type} feature"
            return check

        result = self.entitlements.evaluate(workspace_id, feature.code)
        if result.unlimited or result.limit is None or result.limit == 0:
            check.skipped_reason = "No numeric limit"
            check.resolved = self.resolve_all_for_feature(workspace_id, feature.code)
            return check

        percentage = result.usage_percentage
        check.percentage = percentage
        reached = [band for band in UsageAlertThreshold.ascending() if result.has_reached(band)]

        open_alerts = {alert.threshold: alert for alert in self._open_alerts(workspace_id, feature.code)}
        now = self._now()

        stale = [alert for threshold, alert in open_alerts.items() if not result.has_reached(threshold)]
        for alert in stale:
            alert.resolve(at=now)
        check.resolved = len(stale)

        if reached:
            check.threshold = int(reached[-1])

        pending = [band for band in reached if int(band) not in open_alerts]
        owner_id = None
        if pending and self.owner_resolver is not None:
            owner_id = self.owner_resolver(workspace_id)
            if owner_id is None:
                logger.warning("Cannot send usage alert: workspace has no owner", extra={
                    "workspace_id": workspace_id,
                    "feature_code": feature.code,
                    "threshold": int(pending[-1]),
                })
                pending = []

        for band in pending:
            self._record_alert(workspace_id, feature, band, result, percentage, owner_id, now)
            check.alerts_sent.append(int(band))

        if check.resolved or check.alerts_sent:
            self.db.commit()

        for band in pending:
            self._send_alert(workspace_id, feature, band, result, percentage, owner_id)

        return check

    def _record_alert(
        self,
        workspace_id: str,
        feature: Feature,
        band: UsageAlertThreshold,
        result: EntitlementResult,
        percentage: float,
        owner_id: Optional[str],
        now: datetime,
    ) -> UsageAlertHistory:
        alert = UsageAlertHistory(
            workspace_id=workspace_id,
            feature_code=feature.code,
            threshold=int(band),
            extra_metadata={
                "used": result.used,
                "limit": result.limit,
                "percentage": percentage,
                "notified_user_id": owner_id,
            },
            notified_at=now,
        )
        self.db.add(alert)
        return alert

    def _send_alert(
        self,
        workspace_id: str,
        feature: Feature,
        band: UsageAlertThreshold,
        result: EntitlementResult,
        percentage: float,
        owner_id: Optional[str],
    ) -> None:
        notification = UsageAlertNotification(
            workspace_id=workspace_id,
            owner_id=owner_id,
            feature_code=feature.code,
            feature_name=feature.name,
            threshold=int(band),
            used=result.used,
            limit=result.limit,
            percentage=percentage,
        )
        try:
            delivered = self.notifier.send_usage_alert(notification)
        except Exception as exc:
            delivered = False
            logger.error("Usage alert delivery raised", extra={
                "workspace_id": workspace_id,
                "feature_code": feature.code,
                "threshold": int(band),
                "error": str(exc),
            }, exc_info=True)

        log = logger.info if delivered else logger.warning
        log("Usage alert sent" if delivered else "Usage alert not delivered", extra={
            "workspace_id": workspace_id,
            "feature_code": feature.code,
            "threshold": int(band),
            "used": result.used,
            "limit": result.limit,
            "user_id": owner_id,
        })

    # ------------------------------------------------------------------
    # Alert rows
    # ------------------------------------------------------------------

    def resolve_all_for_feature(self, workspace_id: str, feature_code: str) -> int:
        """Resolve every open alert of the pair; returns how many were resolved."""
        alerts = self._open_alerts(workspace_id, feature_code)
        if not alerts:
            return 0
        now = self._now()
        for alert in alerts:
            alert.resolve(at=now)
        self.db.commit()

        logger.info("Usage alerts resolved", extra={
            "workspace_id": workspace_id,
            "feature_code": feature_code,
            "resolved": len(alerts),
        })
        return len(alerts)

    def resolve_alert(self, alert_id: str) -> bool:
        """Manually resolve one alert (e.g. after an upgrade); False if missing or resolved."""
        alert = self.db.query(UsageAlertHistory).filter(UsageAlertHistory.id == alert_id).first()
        if alert is None or alert.is_resolved:
            return False

        alert.resolve(at=self._now())
        self.db.commit()

        logger.info("Usage alert manually resolved", extra={
            "alert_id": alert_id,
            "workspace_id": alert.workspace_id,
            "feature_code": alert.feature_code,
        })
        return True

    def get_active_alerts_for_workspace(self, workspace_id: str) -> List[UsageAlertHistory]:
        """Unresolved alerts, highest threshold first."""
        return (
            self.db.query(UsageAlertHistory)
            .filter(
                UsageAlertHistory.workspace_id == workspace_id,
                UsageAlertHistory.resolved_at.is_(None),
            )
            .order_by(UsageAlertHistory.threshold.desc(), UsageAlertHistory.notified_at.desc())
            .all()
        )

    def get_alert_history(
        self,
        workspace_id: str,
        days: int = DEFAULT_HISTORY_DAYS,
    ) -> List[UsageAlertHistory]:
        since = self._now() - timedelta(days=days)
        return (
            self.db.query(UsageAlertHistory)
            .filter(
                UsageAlertHistory.workspace_id == workspace_id,
                UsageAlertHistory.notified_at >= since,
            )
            .order_by(UsageAlertHistory.notified_at.desc())
            .all()
        )

    def get_usage_status(self, workspace_id: str) -> List[Dict[str, Any]]:
        """Metered features with a numeric limit and their current alert band."""
        status = []
        for feature in self._alertable_features():
            result = self.entitlements.evaluate(workspace_id, feature.code)
            if result.unlimited or result.limit is None:
                continue
            open_alerts = self._open_alerts(workspace_id, feature.code)
            top = max(open_alerts, key=lambda a: a.threshold) if open_alerts else None
            status.append({
                "code": feature.code,
                "name": feature.name,
                "used": result.used,
                "limit": result.limit,
                "percentage": result.usage_percentage,
                "unlimited": result.unlimited,
                "near_limit": result.is_near_limit,
                "at_limit": result.is_at_limit,
                "active_alert_id": top.id if top else None,
                "alert_threshold": top.threshold if top else None,
            })
        return status

    def _open_alerts(self, workspace_id: str, feature_code: str) -> List[UsageAlertHistory]:
        return (
            self.db.query(UsageAlertHistory)
            .filter(
                UsageAlertHistory.workspace_id == workspace_id,
                UsageAlertHistory.feature_code == feature_code,
                UsageAlertHistory.resolved_at.is_(None),
            )
            .all()
        )

    def _alertable_features(self) -> List[Feature]:
        features = self.entitlements.catalog.list_active_features(FeatureType.LIMIT)
        return [feature for feature in features if not feature.parent_code]
