"""
Billing cycle reset job.

Runs daily. For every workspace holding an active package or boost:
- expires cycle-bound boosts left over from earlier cycles and timed
  boosts past their expiry, notifying the workspace owner
- logs one cycle.reset per workspace per new billing cycle

Safe to re-run: a cycle already reset is skipped, expired boosts stay
expired.

Usage:
    python -m workspace_entitlements.jobs.reset_billing_cycles
    python -m workspace_entitlements.jobs.reset_billing_cycles --workspace ws_123 --dry-run

Environment variables:
    DATABASE_URL: store of record (required)
"""

import sys
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from workspace_entitlements.database.session import session_scope
from workspace_entitlements.entitlements.service import (
    BillingCycleResetResult,
    EntitlementService,
    REASON_CYCLE_ENDED,
    REASON_DURATION_EXPIRED,
)
from workspace_entitlements.models.boost import Boost, BoostDuration, BoostStatus
from workspace_entitlements.services.notifications import (
    BoostExpiryNotification,
    EntitlementNotifier,
    LoggingEntitlementNotifier,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class BillingCycleResetJob:
    """Per-workspace billing cycle maintenance."""

    def __init__(
        self,
        db_session: Session,
        entitlement_service: Optional[EntitlementService] = None,
        notifier: Optional[EntitlementNotifier] = None,
        owner_resolver: Optional[Callable[[str], Optional[str]]] = None,
        dry_run: bool = False,
    ):
        self.db = db_session
        self.service = entitlement_service or EntitlementService(db_session)
        self.notifier = notifier or LoggingEntitlementNotifier()
        self.owner_resolver = owner_resolver
        self.dry_run = dry_run
        self.stats = {
            "workspaces_processed": 0,
            "cycles_reset": 0,
            "boosts_expired": 0,
            "notifications_sent": 0,
            "errors": 0,
            "dry_run": dry_run,
        }

    def workspaces_to_process(self) -> List[str]:
        """Workspaces with an active package or an active boost."""
        workspace_ids = set(self.service.list_workspaces_with_active_packages())
        rows = (
            self.db.query(Boost.workspace_id)
            .filter(Boost.status == BoostStatus.ACTIVE.value)
            .distinct()
            .all()
        )
        workspace_ids.update(row[0] for row in rows)
        return sorted(workspace_ids)

    def process_workspace(self, workspace_id: str) -> Optional[BillingCycleResetResult]:
        """Reset one workspace; errors are logged and counted, not raised."""
        try:
            result = self.service.reset_billing_cycle(workspace_id, dry_run=self.dry_run)
        except Exception as e:
            self.db.rollback()
            self.stats["errors"] += 1
            logger.error(
                "Billing cycle reset failed for workspace",
                extra={"workspace_id": workspace_id, "error": str(e)},
                exc_info=True,
            )
            return None

        self.stats["workspaces_processed"] += 1
        if result.cycle_reset:
            self.stats["cycles_reset"] += 1
        self.stats["boosts_expired"] += len(result.boosts_expired)

        if result.boosts_expired and not self.dry_run:
            self._notify_boost_expiry(workspace_id, result.boosts_expired)

        return result

    def _notify_boost_expiry(self, workspace_id: str, boost_ids: List[str]) -> None:
        boosts = self.db.query(Boost).filter(Boost.id.in_(boost_ids)).all()
        owner_id = self.owner_resolver(workspace_id) if self.owner_resolver else None

        groups: Dict[str, List[Boost]] = {}
        for boost in boosts:
            reason = (
                REASON_DURATION_EXPIRED
                if boost.duration_type == BoostDuration.DURATION.value
                else REASON_CYCLE_ENDED
            )
            groups.setdefault(reason, []).append(boost)

        for reason, expired in groups.items():
            notification = BoostExpiryNotification(
                workspace_id=workspace_id,
                owner_id=owner_id,
                boost_ids=[boost.id for boost in expired],
                feature_codes=sorted({boost.feature_code for boost in expired}),
                reason=reason,
            )
            try:
                if self.notifier.send_boost_expiry(notification):
                    self.stats["notifications_sent"] += 1
            except Exception as e:
                logger.error(
                    "Boost expiry notification failed",
                    extra={"workspace_id": workspace_id, "error": str(e)},
                    exc_info=True,
                )

    def run(self, workspace_id: Optional[str] = None) -> dict:
        """Process one workspace, or every workspace with live entitlements."""
        start_time = datetime.now(timezone.utc)
        workspace_ids = [workspace_id] if workspace_id else self.workspaces_to_process()

        logger.info(
            "Billing cycle reset starting",
            extra={"workspace_count": len(workspace_ids), "dry_run": self.dry_run},
        )

        for ws_id in workspace_ids:
            self.process_workspace(ws_id)

        self.stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info("Billing cycle reset completed", extra=self.stats)
        return self.stats


def main(argv=None):
    """Main entry point for the billing cycle reset job."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Reset billing cycles and expire cycle-bound boosts",
    )
    parser.add_argument(
        "--workspace",
        type=str,
        help="Only process this workspace id",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("workspace_entitlements").setLevel(logging.DEBUG)

    try:
        with session_scope() as session:
            job = BillingCycleResetJob(session, dry_run=args.dry_run)
            stats = job.run(args.workspace)
    except Exception as e:
        logger.error("Billing cycle reset failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    print(f"Billing cycle reset completed: {stats}")
    if stats["errors"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
