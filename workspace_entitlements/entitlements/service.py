"""
Entitlement Service: single entry point for all entitlement operations.

Provides:
- can(workspace_id, feature_code, quantity) → EntitlementResult
- evaluate(workspace_id, feature_code) → same result without the denial audit
- record_usage(workspace_id, feature_code, quantity, ...) → UsageRecord
- Package lifecycle: provision / suspend / reactivate / revoke
- Boost lifecycle: provision / cancel / expire cycle-bound and timed boosts
- reset_billing_cycle(workspace_id) for the scheduled reset job
- Read models: active packages, active boosts, usage summary, audit log

Architecture:
- Fail-CLOSED: a store failure during evaluation raises
  EntitlementEvaluationError and emits a support alert; it never grants
- Single-flight: concurrent cache misses for the same (workspace, feature)
  share one computation
- Resolution: package grants (combined by PackageLimitPolicy) + usable
  boosts, usage counted over the feature's reset window
- Every write path commits first, then invalidates the cache through
  @invalidates_entitlements; callers never invalidate by hand

The workspace is always passed explicitly; there is no ambient context.
"""

import functools
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from workspace_entitlements.entitlements import billing_cycle
from workspace_entitlements.entitlements.audit import (
    EntitlementAuditLogger,
    get_audit_logger,
)
from workspace_entitlements.entitlements.cache import (
    EntitlementCache,
    get_entitlement_cache,
    invalidate_workspace_entitlements,
)
from workspace_entitlements.entitlements.catalog import EntitlementCatalog
from workspace_entitlements.entitlements.errors import (
    BoostNotFoundError,
    EntitlementEvaluationError,
    FeatureNotFoundError,
    InvariantViolationError,
    PackageNotFoundError,
)
from workspace_entitlements.entitlements.options import (
    BoostProvisionOptions,
    PackageProvisionOptions,
)
from workspace_entitlements.entitlements.result import EntitlementResult
from workspace_entitlements.models.base import as_utc, utcnow
from workspace_entitlements.models.boost import Boost, BoostDuration, BoostStatus
from workspace_entitlements.models.entitlement_log import (
    EntitlementAction,
    EntitlementLog,
    EntitlementSource,
    EntityType,
)
from workspace_entitlements.models.feature import Feature, FeatureType, ResetType
from workspace_entitlements.models.package import Package
from workspace_entitlements.models.usage import UsageRecord
from workspace_entitlements.models.workspace_package import (
    WorkspacePackage,
    WorkspacePackageStatus,
)

logger = logging.getLogger(__name__)

REASON_REPLACED = "Replaced by new base package"
REASON_REVOKED = "Package revoked"
REASON_REACTIVATION_CONFLICT = "Superseded by newer base package on reactivation"
REASON_CYCLE_ENDED = "Billing cycle ended"
REASON_DURATION_EXPIRED = "Duration expired"
REASON_BOOST_CANCELLED = "Boost cancelled"

DEFAULT_SUMMARY_CATEGORY = "general"


# ---------------------------------------------------------------------------
# Limit combination policy
# ---------------------------------------------------------------------------

class PackageLimitPolicy(str, Enum):
    """
    How limits from several active packages granting the same feature combine.

    SUM: add-on packages stack on the base package (default).
    MAX: the most generous single grant wins.
    Boost limits are always added on top, whichever policy is active.
    """
    SUM = "sum"
    MAX = "max"

    def combine(self, limits: List[int]) -> int:
        if not limits:
            return 0
        if self is PackageLimitPolicy.MAX:
            return max(limits)
        return sum(limits)


def _limit_policy_from_env() -> PackageLimitPolicy:
    raw = os.getenv("ENTITLEMENT_PACKAGE_LIMIT_POLICY", PackageLimitPolicy.SUM.value)
    try:
        return PackageLimitPolicy(raw.strip().lower())
    except ValueError:
        logger.warning(
            "Unknown ENTITLEMENT_PACKAGE_LIMIT_POLICY, falling back to sum",
            extra={"value": raw},
        )
        return PackageLimitPolicy.SUM


# ---------------------------------------------------------------------------
# Single-flight lock registry, prevents cache stampede
# ---------------------------------------------------------------------------

class _SingleFlightRegistry:
    """
    Prevents N concurrent cache misses for the same (workspace, feature)
    from all hitting the database. The first caller acquires the key's
    lock, computes and caches; later callers wait and read from cache.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()

    def get_lock(self, key: str) -> Lock:
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = Lock()
            return self._locks[key]

    def release(self, key: str) -> None:
        with self._registry_lock:
            self._locks.pop(key, None)


_single_flight = _SingleFlightRegistry()


# ---------------------------------------------------------------------------
# Write-path invalidation
# ---------------------------------------------------------------------------

def invalidates_entitlements(scope: str = "workspace"):
    """
    Decorate an EntitlementService write path so the cache is invalidated
    after the method returns (its unit of work has committed by then).

    scope="workspace" drops every cached snapshot of the workspace.
    scope="feature" drops only the (workspace, feature_code) snapshot, or
    the whole workspace when the feature shares a usage pool.

    The decorated method's first two parameters must be workspace_id and,
    for feature scope, feature_code. Nothing is invalidated if the method
    raises, since nothing was committed.
    """
    if scope not in ("workspace", "feature"):
        raise ValueError(f"Unknown invalidation scope: {scope}")

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, workspace_id, *args, **kwargs):
            result = func(self, workspace_id, *args, **kwargs)

            feature_code = None
            if scope == "feature":
                feature_code = kwargs.get("feature_code", args[0] if args else None)
                if feature_code is not None:
                    feature_code = self._invalidation_key(feature_code)

            self.invalidate_entitlements(
                workspace_id,
                feature_code=feature_code,
                reason=func.__name__,
            )
            return result
        return wrapper
    return decorator


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class BillingCycleResetResult:
    """Outcome of reset_billing_cycle() for one workspace."""

    workspace_id: str
    dry_run: bool = False
    cycle_start: Optional[str] = None
    cycle_end: Optional[str] = None
    cycle_reset: bool = False
    previous_cycle_records: int = 0
    boosts_expired: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# EntitlementService
# ---------------------------------------------------------------------------

class EntitlementService:
    """
    Central entitlement service.

    One instance per request / job. Stateless between calls except for
    injected collaborators (db, cache, audit, policy, clock).
    """

    def __init__(
        self,
        db_session: Session,
        cache: Optional[EntitlementCache] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        limit_policy: Optional[PackageLimitPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.catalog = EntitlementCatalog(db_session)
        self._cache = cache if cache is not None else get_entitlement_cache()
        self._audit = audit_logger or get_audit_logger()
        self.limit_policy = (
            PackageLimitPolicy(limit_policy) if limit_policy else _limit_policy_from_env()
        )
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Resolver
    # ------------------------------------------------------------------

    def can(
        self,
        workspace_id: str,
        feature_code: str,
        quantity: int = 1,
    ) -> EntitlementResult:
        """
        Decide whether the workspace may consume `quantity` of the feature.

        Denial is a normal outcome, returned as a result with a reason.
        Quantities below 1 are treated as 1.

        Raises:
            EntitlementEvaluationError: the decision could not be computed
        """
        if quantity is None or quantity < 1:
            logger.warning(
                "Entitlement check quantity below 1, using 1",
                extra={
                    "workspace_id": workspace_id,
                    "feature_code": feature_code,
                    "quantity": quantity,
                },
            )
            quantity = 1

        snapshot = self._resolve_snapshot(workspace_id, feature_code)
        result = snapshot.for_quantity(quantity)

        if not result.allowed:
            self._audit.log_denial(workspace_id, result)
        return result

    def evaluate(self, workspace_id: str, feature_code: str, quantity: int = 1) -> EntitlementResult:
        """Current standing for reporting and sweeps; unlike can(), denials are not audited."""
        return self._resolve_snapshot(workspace_id, feature_code).for_quantity(max(quantity or 1, 1))

    def _resolve_snapshot(self, workspace_id: str, feature_code: str) -> EntitlementResult:
        """
        Quantity-independent snapshot for (workspace, feature).

        1. Check cache → return on hit
        2. Acquire single-flight lock
        3. Re-check cache (another thread may have populated it)
        4. Compute from the store
        5. Cache result
        """
        if not workspace_id:
            raise EntitlementEvaluationError(workspace_id or "", "workspace_id is required")

        try:
            cached = self._cache.get(workspace_id, feature_code)
            if cached is not None:
                return cached
        except Exception as exc:
            logger.warning("Cache read failed, computing fresh", extra={
                "workspace_id": workspace_id,
                "feature_code": feature_code,
                "error": str(exc),
            })

        key = f"{workspace_id}:{feature_code}"
        lock = _single_flight.get_lock(key)
        if not lock.acquire(timeout=5.0):
            raise EntitlementEvaluationError(
                workspace_id, "Timed out waiting for entitlement computation"
            )

        try:
            try:
                cached = self._cache.get(workspace_id, feature_code)
                if cached is not None:
                    return cached
            except Exception as exc:
                logger.debug("Cache re-check failed", extra={
                    "workspace_id": workspace_id, "error": str(exc),
                })

            snapshot = self._compute_snapshot(workspace_id, feature_code, self._now())

            try:
                self._cache.set(workspace_id, feature_code, snapshot)
            except Exception as exc:
                logger.warning("Failed to cache entitlement snapshot", extra={
                    "workspace_id": workspace_id,
                    "feature_code": feature_code,
                    "error": str(exc),
                })

            return snapshot

        except EntitlementEvaluationError:
            raise
        except Exception as exc:
            self._emit_support_alert(workspace_id, feature_code, exc)
            raise EntitlementEvaluationError(
                workspace_id,
                "Internal error during entitlement evaluation",
                cause=exc,
            ) from exc
        finally:
            lock.release()
            _single_flight.release(key)

    def _compute_snapshot(
        self,
        workspace_id: str,
        feature_code: str,
        now: datetime,
    ) -> EntitlementResult:
        """
        Full resolution from the store.

        Steps:
        1. Feature lookup (missing/inactive → denied)
        2. Pool feature (hierarchical features share their parent's grants)
        3. Grants from usable packages, usable boosts
        4. Neither → denied "plan does not include"
        5. Boolean → allowed, no limit, no usage
        6. Usage in the reset window
        7. Unlimited grant/boost/type → unlimited
        8. Limit = policy(package limits) + boost limits
        """
        feature = self.catalog.get_feature(feature_code)
        if feature is None:
            return EntitlementResult.feature_missing(feature_code)

        pool = self.catalog.resolve_pool(feature)

        packages = self._usable_packages(workspace_id, now)
        grants = self.catalog.grants_for_feature(pool.id, [wp.package_id for wp in packages])

        cycle_start, _ = self.current_cycle_bounds(workspace_id, now)
        boosts = [
            boost for boost in self._active_boosts(workspace_id, pool.code)
            if boost.is_usable(now, cycle_start)
        ]

        if not grants and not boosts:
            return EntitlementResult.not_in_plan(feature.code, feature.name)

        feature_type = pool.feature_type
        if feature_type == FeatureType.BOOLEAN:
            return EntitlementResult.allowed_result(
                feature.code, limit=None, used=0, feature_name=feature.name
            )

        used = self._usage_in_window(workspace_id, pool, now, cycle_start)

        if feature_type == FeatureType.UNLIMITED:
            return EntitlementResult.unlimited_result(feature.code, used, feature.name)
        elif feature_type == FeatureType.LIMIT:
            if any(grant.limit_value is None for grant in grants) or any(
                boost.is_unlimited for boost in boosts
            ):
                return EntitlementResult.unlimited_result(feature.code, used, feature.name)

            package_limit = self.limit_policy.combine([grant.limit_value for grant in grants])
            boost_limit = sum(boost.remaining_limit or 0 for boost in boosts)
            return EntitlementResult.allowed_result(
                feature.code,
                limit=package_limit + boost_limit,
                used=used,
                feature_name=feature.name,
            )
        raise EntitlementEvaluationError(
            workspace_id, f"Unhandled feature type {feature_type!r} for {feature.code}"
        )

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    @invalidates_entitlements(scope="feature")
    def record_usage(
        self,
        workspace_id: str,
        feature_code: str,
        quantity: int = 1,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        """
        Append a usage record. Never checks limits; call can() first.

        Usage of a pooled feature is recorded under its pool code.

        Raises:
            ValueError: quantity below 1
        """
        if quantity is None or quantity < 1:
            raise ValueError(f"Usage quantity must be >= 1, got {quantity}")

        feature = self.catalog.get_feature(feature_code)
        if feature is None:
            logger.warning("Recording usage for unknown feature", extra={
                "workspace_id": workspace_id,
                "feature_code": feature_code,
            })
        pool_code = self.catalog.resolve_pool(feature).code if feature else feature_code

        record = UsageRecord(
            workspace_id=workspace_id,
            feature_code=pool_code,
            quantity=quantity,
            user_id=user_id,
            extra_metadata=metadata or None,
            recorded_at=self._now(),
        )
        with self._unit_of_work():
            self.db.add(record)

        logger.info("Usage recorded", extra={
            "workspace_id": workspace_id,
            "feature_code": pool_code,
            "quantity": quantity,
            "user_id": user_id,
        })
        return record

    def get_usage(self, workspace_id: str, feature_code: str) -> int:
        """Usage of a feature in its current reset window (0 for unknown features)."""
        feature = self.catalog.get_feature(feature_code)
        if feature is None:
            return 0
        now = self._now()
        pool = self.catalog.resolve_pool(feature)
        cycle_start, _ = self.current_cycle_bounds(workspace_id, now)
        return self._usage_in_window(workspace_id, pool, now, cycle_start)

    def _usage_in_window(
        self,
        workspace_id: str,
        feature: Feature,
        now: datetime,
        cycle_start: datetime,
    ) -> int:
        query = self.db.query(func.coalesce(func.sum(UsageRecord.quantity), 0)).filter(
            UsageRecord.workspace_id == workspace_id,
            UsageRecord.feature_code == feature.code,
        )

        reset = feature.reset
        if reset == ResetType.MONTHLY:
            since = cycle_start
            last_reset = self._last_cycle_reset_start(workspace_id)
            if last_reset is not None and last_reset > since:
                since = last_reset
            query = query.filter(UsageRecord.recorded_at >= since)
        elif reset == ResetType.ROLLING:
            query = query.filter(
                UsageRecord.recorded_at >= billing_cycle.rolling_window_start(now, feature.window_days)
            )

        return int(query.scalar() or 0)

    # ------------------------------------------------------------------
    # Billing cycle
    # ------------------------------------------------------------------

    def current_cycle_bounds(
        self,
        workspace_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[datetime, datetime]:
        """
        [start, end) of the workspace's current billing cycle.

        Anchored on the base package's billing_cycle_anchor; calendar month
        when the workspace holds no base package.
        """
        now = as_utc(now) if now else self._now()
        base = self._billing_base_package(workspace_id)
        anchor = base.cycle_anchor if base is not None else None
        return billing_cycle.workspace_cycle_bounds(anchor, now)

    def _billing_base_package(
        self,
        workspace_id: str,
        active_only: bool = False,
    ) -> Optional[WorkspacePackage]:
        statuses = [WorkspacePackageStatus.ACTIVE.value]
        if not active_only:
            statuses.append(WorkspacePackageStatus.SUSPENDED.value)
        return (
            self.db.query(WorkspacePackage)
            .join(Package, WorkspacePackage.package_id == Package.id)
            .filter(
                WorkspacePackage.workspace_id == workspace_id,
                Package.is_base_package.is_(True),
                WorkspacePackage.status.in_(statuses),
            )
            .order_by(WorkspacePackage.starts_at.desc())
            .first()
        )

    def _cycle_reset_logs(self, workspace_id: str) -> List[EntitlementLog]:
        return (
            self.db.query(EntitlementLog)
            .filter(
                EntitlementLog.workspace_id == workspace_id,
                EntitlementLog.action == EntitlementAction.CYCLE_RESET.value,
            )
            .order_by(EntitlementLog.created_at.desc())
            .all()
        )

    def _last_cycle_reset_start(self, workspace_id: str) -> Optional[datetime]:
        starts = [
            _parse_cycle_start(entry) for entry in self._cycle_reset_logs(workspace_id)
        ]
        starts = [start for start in starts if start is not None]
        return max(starts) if starts else None

    def _cycle_reset_logged(self, workspace_id: str, cycle_start: datetime) -> bool:
        return any(
            _parse_cycle_start(entry) == cycle_start
            for entry in self._cycle_reset_logs(workspace_id)
        )

    @invalidates_entitlements()
    def reset_billing_cycle(
        self,
        workspace_id: str,
        dry_run: bool = False,
    ) -> BillingCycleResetResult:
        """
        Scheduled per-workspace cycle maintenance.

        1. Expire cycle-bound boosts from earlier cycles and timed boosts
           past expires_at
        2. When the workspace's active base package has entered a new cycle
           (any cycle after the first) that has not been logged yet, write
           one cycle.reset log with the prior cycle's record count

        Usage rows are never deleted; the monthly window moves with the
        cycle start. Safe to run any number of times per day.
        """
        now = self._now()
        result = BillingCycleResetResult(workspace_id=workspace_id, dry_run=dry_run)

        expirable = self._expirable_boosts(workspace_id, now)
        result.boosts_expired = [boost.id for boost, _ in expirable]

        base = self._billing_base_package(workspace_id, active_only=True)
        cycle_start = None
        if base is None:
            result.skipped_reason = "No active base package"
        else:
            cycle_start = base.current_cycle_start(now)
            result.cycle_start = cycle_start.isoformat()
            result.cycle_end = base.current_cycle_end(now).isoformat()

            if base.cycle_index(now) < 1:
                result.skipped_reason = "First billing cycle"
            elif self._cycle_reset_logged(workspace_id, cycle_start):
                result.skipped_reason = "Cycle already reset"
            else:
                previous_start = billing_cycle.previous_cycle_start(base.cycle_anchor, now)
                result.previous_cycle_records = (
                    self.db.query(func.count(UsageRecord.id))
                    .filter(
                        UsageRecord.workspace_id == workspace_id,
                        UsageRecord.recorded_at >= previous_start,
                        UsageRecord.recorded_at < cycle_start,
                    )
                    .scalar()
                    or 0
                )
                result.cycle_reset = True

        if dry_run:
            logger.info("Billing cycle reset (dry run)", extra=result.to_dict())
            return result

        with self._unit_of_work():
            self._apply_boost_expiry(workspace_id, expirable, now)
            if result.cycle_reset:
                self._audit.record(
                    self.db,
                    workspace_id,
                    EntitlementAction.CYCLE_RESET,
                    EntityType.WORKSPACE,
                    source=EntitlementSource.SYSTEM,
                    metadata={
                        "cycle_start": cycle_start.isoformat(),
                        "previous_cycle_records": result.previous_cycle_records,
                        "reset_at": now.isoformat(),
                    },
                    created_at=now,
                )

        logger.info("Billing cycle reset", extra=result.to_dict())
        return result

    # ------------------------------------------------------------------
    # Package lifecycle
    # ------------------------------------------------------------------

    @invalidates_entitlements()
    def provision_package(
        self,
        workspace_id: str,
        package_code: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> WorkspacePackage:
        """
        Grant a package to the workspace. Always creates a new row.

        A base package replaces any other base package the workspace holds
        (active or suspended) in the same transaction.

        Options: source, user_id, starts_at, expires_at,
        billing_cycle_anchor (default now), external_service_id
        (alias blesta_service_id), metadata.

        Raises:
            PackageNotFoundError: unknown or inactive package
            ValueError: invalid options
        """
        opts = PackageProvisionOptions.model_validate(options or {})
        package = self.catalog.get_package(package_code)
        if package is None:
            raise PackageNotFoundError(package_code)

        now = self._now()
        with self._unit_of_work():
            if package.is_base_package:
                for previous in self._base_packages_for_update(workspace_id):
                    self._cancel_workspace_package(
                        previous,
                        now,
                        reason=REASON_REPLACED,
                        source=opts.source,
                        user_id=opts.user_id,
                        extra={"replaced_by": package.code},
                    )

            workspace_package = WorkspacePackage(
                workspace_id=workspace_id,
                package_id=package.id,
                package=package,
                status=WorkspacePackageStatus.ACTIVE.value,
                starts_at=opts.starts_at or now,
                expires_at=opts.expires_at,
                billing_cycle_anchor=opts.billing_cycle_anchor or now,
                external_service_id=opts.external_service_id,
                extra_metadata=opts.metadata or None,
            )
            self.db.add(workspace_package)
            self.db.flush()

            self._audit.record(
                self.db,
                workspace_id,
                EntitlementAction.PACKAGE_PROVISIONED,
                EntityType.WORKSPACE_PACKAGE,
                entity_id=workspace_package.id,
                source=opts.source,
                user_id=opts.user_id,
                new_values=workspace_package.to_dict(),
                metadata={"package_code": package.code},
                created_at=now,
            )

        logger.info("Package provisioned", extra={
            "workspace_id": workspace_id,
            "package_code": package.code,
            "workspace_package_id": workspace_package.id,
            "is_base_package": package.is_base_package,
            "source": opts.source.value,
        })
        return workspace_package

    @invalidates_entitlements()
    def suspend_workspace(
        self,
        workspace_id: str,
        source: EntitlementSource = EntitlementSource.SYSTEM,
        user_id: Optional[str] = None,
    ) -> List[WorkspacePackage]:
        """Suspend every active package; no-op (no logs) when none are active."""
        packages = self._packages_in_status(workspace_id, WorkspacePackageStatus.ACTIVE)
        if not packages:
            return []

        now = self._now()
        with self._unit_of_work():
            for workspace_package in packages:
                workspace_package.suspend()
                self._audit.record(
                    self.db,
                    workspace_id,
                    EntitlementAction.PACKAGE_SUSPENDED,
                    EntityType.WORKSPACE_PACKAGE,
                    entity_id=workspace_package.id,
                    source=source,
                    user_id=user_id,
                    old_values={"status": WorkspacePackageStatus.ACTIVE.value},
                    new_values={"status": WorkspacePackageStatus.SUSPENDED.value},
                    metadata={"package_code": workspace_package.package.code},
                    created_at=now,
                )

        logger.info("Workspace suspended", extra={
            "workspace_id": workspace_id,
            "packages_suspended": len(packages),
            "source": EntitlementSource(source).value,
        })
        return packages

    @invalidates_entitlements()
    def reactivate_workspace(
        self,
        workspace_id: str,
        source: EntitlementSource = EntitlementSource.SYSTEM,
        user_id: Optional[str] = None,
    ) -> List[WorkspacePackage]:
        """
        Reactivate every suspended package.

        If that would leave two active base packages, the newest stays and
        the older ones are cancelled.
        """
        packages = self._packages_in_status(workspace_id, WorkspacePackageStatus.SUSPENDED)
        if not packages:
            return []

        now = self._now()
        with self._unit_of_work():
            for workspace_package in packages:
                workspace_package.reactivate()
                self._audit.record(
                    self.db,
                    workspace_id,
                    EntitlementAction.PACKAGE_REACTIVATED,
                    EntityType.WORKSPACE_PACKAGE,
                    entity_id=workspace_package.id,
                    source=source,
                    user_id=user_id,
                    old_values={"status": WorkspacePackageStatus.SUSPENDED.value},
                    new_values={"status": WorkspacePackageStatus.ACTIVE.value},
                    metadata={"package_code": workspace_package.package.code},
                    created_at=now,
                )

            self.db.flush()
            active_bases = [
                wp for wp in self._packages_in_status(workspace_id, WorkspacePackageStatus.ACTIVE)
                if wp.is_base
            ]
            active_bases.sort(key=lambda wp: as_utc(wp.starts_at), reverse=True)
            for stale in active_bases[1:]:
                self._cancel_workspace_package(
                    stale,
                    now,
                    reason=REASON_REACTIVATION_CONFLICT,
                    source=source,
                    user_id=user_id,
                )

        logger.info("Workspace reactivated", extra={
            "workspace_id": workspace_id,
            "packages_reactivated": len(packages),
            "source": EntitlementSource(source).value,
        })
        return packages

    @invalidates_entitlements()
    def revoke_package(
        self,
        workspace_id: str,
        package_code: str,
        source: EntitlementSource = EntitlementSource.SYSTEM,
        user_id: Optional[str] = None,
    ) -> List[WorkspacePackage]:
        """
        Cancel the workspace's active or suspended rows for a package.

        Idempotent: returns [] without logging when nothing is held.

        Raises:
            PackageNotFoundError: no package with that code exists at all
        """
        package = self.db.query(Package).filter(Package.code == package_code).first()
        if package is None:
            raise PackageNotFoundError(package_code)

        held = (
            self.db.query(WorkspacePackage)
            .filter(
                WorkspacePackage.workspace_id == workspace_id,
                WorkspacePackage.package_id == package.id,
                WorkspacePackage.status.in_([
                    WorkspacePackageStatus.ACTIVE.value,
                    WorkspacePackageStatus.SUSPENDED.value,
                ]),
            )
            .with_for_update(of=WorkspacePackage)
            .all()
        )
        if not held:
            return []

        now = self._now()
        with self._unit_of_work():
            for workspace_package in held:
                self._cancel_workspace_package(
                    workspace_package,
                    now,
                    reason=REASON_REVOKED,
                    source=source,
                    user_id=user_id,
                )

        logger.info("Package revoked", extra={
            "workspace_id": workspace_id,
            "package_code": package_code,
            "rows_cancelled": len(held),
        })
        return held

    def _cancel_workspace_package(
        self,
        workspace_package: WorkspacePackage,
        now: datetime,
        reason: str,
        source: EntitlementSource,
        user_id: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        old_status = workspace_package.status
        workspace_package.cancel(at=now)
        metadata = {"reason": reason, "package_code": workspace_package.package.code}
        metadata.update(extra or {})
        self._audit.record(
            self.db,
            workspace_package.workspace_id,
            EntitlementAction.PACKAGE_CANCELLED,
            EntityType.WORKSPACE_PACKAGE,
            entity_id=workspace_package.id,
            source=source,
            user_id=user_id,
            old_values={"status": old_status},
            new_values={
                "status": WorkspacePackageStatus.CANCELLED.value,
                "expires_at": now.isoformat(),
            },
            metadata=metadata,
            created_at=now,
        )

    def _base_packages_for_update(self, workspace_id: str) -> List[WorkspacePackage]:
        """Lock the workspace's live base package rows for replacement."""
        return (
            self.db.query(WorkspacePackage)
            .join(Package, WorkspacePackage.package_id == Package.id)
            .filter(
                WorkspacePackage.workspace_id == workspace_id,
                Package.is_base_package.is_(True),
                WorkspacePackage.status.in_([
                    WorkspacePackageStatus.ACTIVE.value,
                    WorkspacePackageStatus.SUSPENDED.value,
                ]),
            )
            .with_for_update(of=WorkspacePackage)
            .all()
        )

    def _packages_in_status(
        self,
        workspace_id: str,
        status: WorkspacePackageStatus,
    ) -> List[WorkspacePackage]:
        return (
            self.db.query(WorkspacePackage)
            .filter(
                WorkspacePackage.workspace_id == workspace_id,
                WorkspacePackage.status == status.value,
            )
            .order_by(WorkspacePackage.starts_at)
            .all()
        )

    def _usable_packages(self, workspace_id: str, now: datetime) -> List[WorkspacePackage]:
        rows = (
            self.db.query(WorkspacePackage)
            .filter(
                WorkspacePackage.workspace_id == workspace_id,
                WorkspacePackage.status == WorkspacePackageStatus.ACTIVE.value,
                WorkspacePackage.starts_at <= now,
            )
            .order_by(WorkspacePackage.starts_at)
            .all()
        )
        return [row for row in rows if row.is_usable(now)]

    def assert_single_base_package(self, workspace_id: str) -> None:
        """
        Raises:
            InvariantViolationError: more than one active base package
        """
        active_bases = [
            wp for wp in self._packages_in_status(workspace_id, WorkspacePackageStatus.ACTIVE)
            if wp.is_base
        ]
        if len(active_bases) > 1:
            logger.critical("Multiple active base packages", extra={
                "workspace_id": workspace_id,
                "workspace_package_ids": [wp.id for wp in active_bases],
            })
            raise InvariantViolationError(
                workspace_id,
                f"{len(active_bases)} active base packages",
            )

    # ------------------------------------------------------------------
    # Boost lifecycle
    # ------------------------------------------------------------------

    @invalidates_entitlements()
    def provision_boost(
        self,
        workspace_id: str,
        feature_code: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Boost:
        """
        Grant a boost for a feature (default: permanent add_limit).

        Options: boost_type, duration_type, limit_value, starts_at,
        expires_at (required for duration boosts), external_addon_id,
        source, user_id, metadata.

        Raises:
            FeatureNotFoundError: unknown or inactive feature
            ValueError: invalid options
        """
        opts = BoostProvisionOptions.model_validate(options or {})
        feature = self.catalog.get_feature(feature_code)
        if feature is None:
            raise FeatureNotFoundError(feature_code)
        pool = self.catalog.resolve_pool(feature)

        now = self._now()
        boost = Boost(
            workspace_id=workspace_id,
            feature_code=pool.code,
            boost_type=opts.boost_type.value,
            duration_type=opts.duration_type.value,
            limit_value=opts.limit_value,
            consumed_quantity=0,
            status=BoostStatus.ACTIVE.value,
            starts_at=opts.starts_at or now,
            expires_at=opts.expires_at,
            external_addon_id=opts.external_addon_id,
            extra_metadata=opts.metadata or None,
        )
        with self._unit_of_work():
            self.db.add(boost)
            self.db.flush()
            self._audit.record(
                self.db,
                workspace_id,
                EntitlementAction.BOOST_PROVISIONED,
                EntityType.BOOST,
                entity_id=boost.id,
                source=opts.source,
                user_id=opts.user_id,
                new_values=boost.to_dict(),
                created_at=now,
            )

        logger.info("Boost provisioned", extra={
            "workspace_id": workspace_id,
            "feature_code": pool.code,
            "boost_id": boost.id,
            "boost_type": boost.boost_type,
            "duration_type": boost.duration_type,
            "limit_value": boost.limit_value,
        })
        return boost

    @invalidates_entitlements()
    def cancel_boost(
        self,
        workspace_id: str,
        boost_id: str,
        source: EntitlementSource = EntitlementSource.SYSTEM,
        user_id: Optional[str] = None,
    ) -> Boost:
        """
        Manually cancel an active boost. Non-active boosts are returned unchanged.

        Raises:
            BoostNotFoundError: no such boost in this workspace
        """
        boost = (
            self.db.query(Boost)
            .filter(Boost.id == boost_id, Boost.workspace_id == workspace_id)
            .first()
        )
        if boost is None:
            raise BoostNotFoundError(boost_id)
        if not boost.is_active:
            return boost

        now = self._now()
        with self._unit_of_work():
            boost.cancel()
            self._audit.record(
                self.db,
                workspace_id,
                EntitlementAction.BOOST_CANCELLED,
                EntityType.BOOST,
                entity_id=boost.id,
                source=source,
                user_id=user_id,
                old_values={"status": BoostStatus.ACTIVE.value},
                new_values={"status": BoostStatus.CANCELLED.value},
                metadata={"reason": REASON_BOOST_CANCELLED, "feature_code": boost.feature_code},
                created_at=now,
            )

        logger.info("Boost cancelled", extra={
            "workspace_id": workspace_id,
            "boost_id": boost_id,
        })
        return boost

    @invalidates_entitlements()
    def expire_cycle_bound_boosts(
        self,
        workspace_id: str,
        dry_run: bool = False,
    ) -> List[Boost]:
        """
        Expire boosts whose time is up.

        - cycle_bound: granted before the current cycle start, or past an
          explicit expires_at (reason "Billing cycle ended")
        - duration: past expires_at (reason "Duration expired")
        - permanent: never touched

        Returns the boosts expired (or that would be, with dry_run).
        """
        now = self._now()
        expirable = self._expirable_boosts(workspace_id, now)
        if dry_run or not expirable:
            return [boost for boost, _ in expirable]

        with self._unit_of_work():
            self._apply_boost_expiry(workspace_id, expirable, now)

        return [boost for boost, _ in expirable]

    def _expirable_boosts(
        self,
        workspace_id: str,
        now: datetime,
    ) -> List[Tuple[Boost, str]]:
        cycle_start, _ = self.current_cycle_bounds(workspace_id, now)
        expirable: List[Tuple[Boost, str]] = []

        for boost in self._active_boosts(workspace_id):
            expires_at = as_utc(boost.expires_at)
            if boost.duration_type == BoostDuration.CYCLE_BOUND.value:
                if as_utc(boost.starts_at) < cycle_start or (
                    expires_at is not None and expires_at <= now
                ):
                    expirable.append((boost, REASON_CYCLE_ENDED))
            elif boost.duration_type == BoostDuration.DURATION.value:
                if expires_at is not None and expires_at <= now:
                    expirable.append((boost, REASON_DURATION_EXPIRED))
            elif boost.duration_type == BoostDuration.PERMANENT.value:
                continue
            else:
                logger.warning("Unknown boost duration type", extra={
                    "boost_id": boost.id,
                    "duration_type": boost.duration_type,
                })

        return expirable

    def _apply_boost_expiry(
        self,
        workspace_id: str,
        expirable: List[Tuple[Boost, str]],
        now: datetime,
    ) -> None:
        for boost, reason in expirable:
            boost.expire()
            metadata = {"reason": reason, "expired_at": now.isoformat()}
            if boost.expires_at is not None:
                metadata["expires_at"] = as_utc(boost.expires_at).isoformat()
            self._audit.record(
                self.db,
                workspace_id,
                EntitlementAction.BOOST_EXPIRED,
                EntityType.BOOST,
                entity_id=boost.id,
                source=EntitlementSource.SYSTEM,
                old_values={"status": BoostStatus.ACTIVE.value},
                new_values={"status": BoostStatus.EXPIRED.value},
                metadata=metadata,
                created_at=now,
            )

        if expirable:
            logger.info("Boosts expired", extra={
                "workspace_id": workspace_id,
                "boosts_expired": len(expirable),
                "boost_ids": [boost.id for boost, _ in expirable],
            })

    def _active_boosts(
        self,
        workspace_id: str,
        feature_code: Optional[str] = None,
    ) -> List[Boost]:
        query = self.db.query(Boost).filter(
            Boost.workspace_id == workspace_id,
            Boost.status == BoostStatus.ACTIVE.value,
        )
        if feature_code is not None:
            query = query.filter(Boost.feature_code == feature_code)
        return query.all()

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def get_active_packages(self, workspace_id: str) -> List[WorkspacePackage]:
        """Active, started, unexpired packages."""
        return self._usable_packages(workspace_id, self._now())

    def get_active_boosts(
        self,
        workspace_id: str,
        feature_code: Optional[str] = None,
    ) -> List[Boost]:
        """Usable boosts, soonest expiry first (open-ended last)."""
        now = self._now()
        cycle_start, _ = self.current_cycle_bounds(workspace_id, now)
        boosts = [
            boost for boost in self._active_boosts(workspace_id, feature_code)
            if boost.is_usable(now, cycle_start)
        ]
        boosts.sort(key=lambda b: (b.expires_at is None, as_utc(b.expires_at) or now))
        return boosts

    def get_usage_summary(self, workspace_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """
        Every active feature's current standing, grouped by category.

        Each row: code, name, category, type, allowed, limit, used,
        remaining, unlimited, percentage, near_limit.
        """
        summary: Dict[str, List[Dict[str, Any]]] = {}
        for feature in self.catalog.list_active_features():
            result = self.evaluate(workspace_id, feature.code)
            category = feature.category or DEFAULT_SUMMARY_CATEGORY
            summary.setdefault(category, []).append({
                "code": feature.code,
                "name": feature.name,
                "category": category,
                "type": feature.type,
                "allowed": result.allowed,
                "limit": result.limit,
                "used": result.used,
                "remaining": result.remaining,
                "unlimited": result.unlimited,
                "percentage": result.usage_percentage,
                "near_limit": result.is_near_limit,
            })
        return summary

    def get_entitlement_logs(
        self,
        workspace_id: str,
        action: Optional[EntitlementAction] = None,
        limit: Optional[int] = None,
    ) -> List[EntitlementLog]:
        """Audit rows for the workspace, newest first."""
        query = self.db.query(EntitlementLog).filter(EntitlementLog.workspace_id == workspace_id)
        if action is not None:
            query = query.filter(EntitlementLog.action == EntitlementAction(action).value)
        query = query.order_by(EntitlementLog.created_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_workspaces_with_active_packages(self) -> List[str]:
        rows = (
            self.db.query(WorkspacePackage.workspace_id)
            .filter(WorkspacePackage.status == WorkspacePackageStatus.ACTIVE.value)
            .distinct()
            .order_by(WorkspacePackage.workspace_id)
            .all()
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Cache invalidation
    # ------------------------------------------------------------------

    def invalidate_entitlements(
        self,
        workspace_id: str,
        feature_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Drop cached snapshots for one feature or the whole workspace.

        Failures are logged, not raised: the write has already committed
        and the TTL bounds how long a stale entry can survive.
        """
        try:
            removed = self._cache.invalidate(workspace_id, feature_code, reason)
        except Exception as exc:
            logger.warning("Entitlement cache invalidation failed, relying on TTL", extra={
                "workspace_id": workspace_id,
                "feature_code": feature_code,
                "reason": reason,
                "error": str(exc),
            })
            return 0

        logger.debug("Entitlements invalidated", extra={
            "workspace_id": workspace_id,
            "feature_code": feature_code,
            "reason": reason,
            "cache_deleted": removed,
        })
        return removed

    def _invalidation_key(self, feature_code: str) -> Optional[str]:
        """Feature key to drop after usage, None to drop the whole workspace."""
        feature = self.catalog.get_feature(feature_code)
        if feature is not None and self.catalog.is_pooled(feature):
            return None
        return feature_code

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self):
        """Commit on success, roll back and re-raise on failure."""
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _emit_support_alert(self, workspace_id: str, feature_code: str, exc: Exception) -> None:
        """
        Emit a support alert for entitlement evaluation failure.

        Logs at CRITICAL level with structured payload so monitoring can
        page on it.
        """
        logger.critical(
            "ENTITLEMENT_EVAL_FAILED: support alert",
            extra={
                "alert_type": "entitlement_eval_failed",
                "workspace_id": workspace_id,
                "feature_code": feature_code,
                "error_type": type(exc).__name__,
                "error_detail": str(exc),
                "action_required": "Investigate entitlement evaluation failure",
            },
        )


def _parse_cycle_start(entry: EntitlementLog) -> Optional[datetime]:
    value = (entry.extra_metadata or {}).get("cycle_start")
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError:
        logger.warning("Malformed cycle.reset metadata", extra={
            "log_id": entry.id, "cycle_start": value,
        })
        return None


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def can(
    workspace_id: str,
    feature_code: str,
    db_session: Session,
    quantity: int = 1,
) -> EntitlementResult:
    """
    Module-level convenience for can().

    Creates a service instance with default singletons.
    """
    return EntitlementService(db_session).can(workspace_id, feature_code, quantity)


def invalidate_entitlements(
    workspace_id: str,
    feature_code: Optional[str] = None,
    reason: Optional[str] = None,
) -> int:
    """
    Module-level convenience for cache invalidation.

    Does not require a DB session (cache-only operation).
    """
    removed = invalidate_workspace_entitlements(workspace_id, feature_code, reason)
    logger.info("Entitlements invalidated (module-level)", extra={
        "workspace_id": workspace_id,
        "feature_code": feature_code,
        "reason": reason,
    })
    return removed
