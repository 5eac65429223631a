"""
Usage alert check job.

Runs hourly. Checks metered features of every workspace holding an active
package and notifies owners at the 80/90/100% bands.

Usage:
    python -m workspace_entitlements.jobs.check_usage_alerts
    python -m workspace_entitlements.jobs.check_usage_alerts --workspace ws_123

Environment variables:
    DATABASE_URL: store of record (required)
"""

import sys
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from workspace_entitlements.database.session import session_scope
from workspace_entitlements.services.usage_alert_service import UsageAlertService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class UsageAlertCheckJob:
    """Runs UsageAlertService over one or all workspaces."""

    def __init__(self, db_session: Session, alert_service: Optional[UsageAlertService] = None):
        self.db = db_session
        self.alert_service = alert_service or UsageAlertService(db_session)

    def run(self, workspace_id: Optional[str] = None) -> dict:
        start_time = datetime.now(timezone.utc)

        if workspace_id:
            result = self.alert_service.check_workspace(workspace_id)
            stats = {
                "checked": 1,
                "alerts_sent": result["alerts_sent"],
                "alerts_resolved": result["alerts_resolved"],
                "errors": 0,
            }
        else:
            stats = self.alert_service.check_all_workspaces()

        stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info("Usage alert check completed", extra=stats)
        return stats


def main(argv=None):
    """Main entry point for the usage alert check job."""
    import argparse

    parser = argparse.ArgumentParser(description="Check usage against limits and send alerts")
    parser.add_argument(
        "--workspace",
        type=str,
        help="Only check this workspace id",
    )
    args = parser.parse_args(argv)

    try:
        with session_scope() as session:
            stats = UsageAlertCheckJob(session).run(args.workspace)
    except Exception as e:
        logger.error("Usage alert check failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    print(f"Usage alert check completed: {stats}")


if __name__ == "__main__":
    main()
