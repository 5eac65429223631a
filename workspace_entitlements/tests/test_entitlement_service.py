"""
Tests for EntitlementService.

Tests cover:
- Resolver: missing/ungranted/boolean/unlimited/metered features
- Package limit policy (sum / max)
- Usage recording and reset windows (monthly, rolling, none)
- Pooled features sharing a parent's limit and usage
- Boost lifecycle and expiry
- Package lifecycle, base package invariant, audit log
- Caching and invalidation, fail-closed evaluation
- Billing cycle reset and read models
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from workspace_entitlements.entitlements.audit import EntitlementAuditLogger
from workspace_entitlements.entitlements.cache import EntitlementCache
from workspace_entitlements.entitlements.errors import (
    BoostNotFoundError,
    EntitlementEvaluationError,
    FeatureNotFoundError,
    InvariantViolationError,
    PackageNotFoundError,
)
from workspace_entitlements.entitlements.service import (
    EntitlementService,
    PackageLimitPolicy,
    REASON_CYCLE_ENDED,
    REASON_DURATION_EXPIRED,
    REASON_REACTIVATION_CONFLICT,
    REASON_REPLACED,
    REASON_REVOKED,
)
from workspace_entitlements.models import (
    Boost,
    BoostStatus,
    EntitlementAction,
    EntitlementLog,
    EntitlementSource,
    UsageRecord,
    WorkspacePackage,
    WorkspacePackageStatus,
)

WS = "ws_test"
OTHER_WS = "ws_other"


def actions(service, workspace_id=WS, action=None):
    return [log.action for log in service.get_entitlement_logs(workspace_id, action=action)]


# =============================================================================
# Resolver
# =============================================================================


class TestResolver:
    """Test suite for can()."""

    def test_unknown_feature_denied(self, service, seed_catalog):
        result = service.can(WS, "does.not.exist")

        assert result.allowed is False
        assert result.reason == "Feature 'does.not.exist' does not exist."

    def test_inactive_feature_treated_as_missing(self, service, seed_catalog, db_session):
        seed_catalog["features"]["social.accounts"].deactivate()
        db_session.commit()
        service.provision_package(WS, "creator")

        result = service.can(WS, "social.accounts")

        assert result.reason == "Feature 'social.accounts' does not exist."

    def test_feature_not_in_plan(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        result = service.can(WS, "workspace.members")

        assert result.allowed is False
        assert result.reason == "Your plan does not include Team Members."
        assert result.feature_code == "workspace.members"

    def test_no_packages_means_not_in_plan(self, service, seed_catalog):
        assert service.can(WS, "ai.credits").reason == "Your plan does not include AI Credits."

    def test_boolean_feature_allowed_without_limit(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        result = service.can(WS, "tier.apollo", quantity=1000)

        assert result.allowed is True
        assert result.limit is None
        assert result.used == 0
        assert result.unlimited is False

    def test_unlimited_feature(self, service, seed_catalog):
        service.provision_package(WS, "agency")
        service.record_usage(WS, "workspace.members", 40)

        result = service.can(WS, "workspace.members", quantity=10_000)

        assert result.allowed is True
        assert result.unlimited is True
        assert result.used == 40
        assert result.remaining is None

    def test_null_grant_limit_is_unlimited(self, service, seed_catalog):
        service.provision_package(WS, "agency")

        result = service.can(WS, "social.posts", quantity=5000)

        assert result.unlimited is True
        assert result.allowed is True

    def test_metered_feature_within_limit(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "social.accounts", 3)

        result = service.can(WS, "social.accounts", quantity=2)

        assert result.allowed is True
        assert (result.limit, result.used, result.remaining) == (5, 3, 2)

    def test_metered_feature_over_limit(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "social.accounts", 3)

        result = service.can(WS, "social.accounts", quantity=3)

        assert result.allowed is False
        assert result.reason == "You have reached your Social Accounts limit (3/5 used)."

    def test_quantity_below_one_treated_as_one(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "social.accounts", 5)

        assert service.can(WS, "social.accounts", quantity=0).allowed is False
        assert service.can(WS, "social.accounts", quantity=-3).allowed is False

    def test_future_package_not_usable(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator", {"starts_at": clock.now + timedelta(days=2)})

        assert service.can(WS, "ai.credits").allowed is False

        clock.advance(days=3)
        assert service.can(WS, "ai.credits").allowed is True

    def test_expired_package_not_usable(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator", {"expires_at": clock.now + timedelta(days=1)})

        clock.advance(days=1)

        assert service.can(WS, "ai.credits").allowed is False

    def test_workspaces_are_isolated(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "social.accounts", 5)

        assert service.can(OTHER_WS, "social.accounts").allowed is False
        service.provision_package(OTHER_WS, "creator")
        assert service.can(OTHER_WS, "social.accounts").used == 0

    def test_module_level_can(self, db_session, seed_catalog, service, monkeypatch):
        from workspace_entitlements.entitlements import service as service_module

        service.provision_package(WS, "creator")
        monkeypatch.setattr(service_module, "get_entitlement_cache", lambda: service._cache)

        assert service_module.can(WS, "ai.credits", db_session).allowed is True


# =============================================================================
# Limit policy
# =============================================================================


class TestPackageLimitPolicy:
    """Combining limits of several packages granting one feature."""

    def test_sum_is_default(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")

        assert service.limit_policy is PackageLimitPolicy.SUM
        assert service.can(WS, "ai.credits").limit == 600

    def test_max_policy(self, db_session, disabled_cache, clock, seed_catalog):
        service = EntitlementService(
            db_session, cache=disabled_cache, limit_policy="max", clock=clock
        )
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")

        assert service.can(WS, "ai.credits").limit == 500

    def test_policy_from_env(self, db_session, disabled_cache, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_PACKAGE_LIMIT_POLICY", "MAX")
        assert EntitlementService(db_session, cache=disabled_cache).limit_policy is PackageLimitPolicy.MAX

    def test_invalid_env_policy_falls_back_to_sum(self, db_session, disabled_cache, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_PACKAGE_LIMIT_POLICY", "average")
        assert EntitlementService(db_session, cache=disabled_cache).limit_policy is PackageLimitPolicy.SUM

    def test_combine_empty(self):
        assert PackageLimitPolicy.SUM.combine([]) == 0
        assert PackageLimitPolicy.MAX.combine([]) == 0


# =============================================================================
# Usage
# =============================================================================


class TestUsage:
    """Usage recording and reset windows."""

    def test_record_usage_persists_row(self, service, seed_catalog, db_session):
        service.provision_package(WS, "creator")

        record = service.record_usage(WS, "ai.credits", 7, user_id="user_1", metadata={"job": "x"})

        stored = db_session.query(UsageRecord).filter_by(id=record.id).one()
        assert (stored.feature_code, stored.quantity, stored.user_id) == ("ai.credits", 7, "user_1")
        assert stored.extra_metadata == {"job": "x"}

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_record_usage_rejects_non_positive(self, service, seed_catalog, quantity):
        with pytest.raises(ValueError):
            service.record_usage(WS, "ai.credits", quantity)

    def test_record_usage_does_not_check_limits(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        service.record_usage(WS, "social.accounts", 50)

        result = service.can(WS, "social.accounts")
        assert result.used == 50
        assert result.remaining == 0

    def test_monthly_window_follows_billing_cycle(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 80)

        clock.advance(days=20)
        assert service.can(WS, "ai.credits").used == 80

        clock.set(datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc))
        result = service.can(WS, "ai.credits")
        assert result.used == 0
        assert result.remaining == 100

    def test_rolling_window(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "social.posts", 4)
        clock.advance(days=20)
        service.record_usage(WS, "social.posts", 3)

        assert service.get_usage(WS, "social.posts") == 7

        clock.advance(days=11)
        assert service.get_usage(WS, "social.posts") == 3

    def test_no_reset_counts_all_time(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "social.accounts", 2)

        clock.advance(days=400)

        assert service.can(WS, "social.accounts").used == 2

    def test_get_usage_unknown_feature(self, service, seed_catalog):
        assert service.get_usage(WS, "nope") == 0


class TestPooledFeatures:
    """Child features draw from their parent's limit and usage."""

    def test_child_uses_pool_limit_and_usage(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 40)

        result = service.can(WS, "ai.images")

        assert result.feature_code == "ai.images"
        assert result.limit == 100
        assert result.used == 40

    def test_child_usage_recorded_under_pool(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        record = service.record_usage(WS, "ai.images", 30)

        assert record.feature_code == "ai.credits"
        assert service.can(WS, "ai.credits").used == 30

    def test_child_denial_names_child(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 100)

        result = service.can(WS, "ai.images")

        assert result.allowed is False
        assert result.reason == "You have reached your AI Images limit (100/100 used)."

    def test_child_not_in_plan_when_pool_not_granted(self, service, seed_catalog, make_package):
        make_package("tiny", {seed_catalog["features"]["tier.apollo"]: None}, base=True)
        service.provision_package(WS, "tiny")

        assert service.can(WS, "ai.images").reason == "Your plan does not include AI Images."

    def test_boost_on_child_lands_on_pool(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        boost = service.provision_boost(WS, "ai.images", {"limit_value": 25})

        assert boost.feature_code == "ai.credits"
        assert service.can(WS, "ai.credits").limit == 125


# =============================================================================
# Boosts
# =============================================================================


class TestBoosts:
    """Boost provisioning, resolution and expiry."""

    def test_add_limit_boost_is_additive(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        service.provision_boost(WS, "ai.credits", {"limit_value": 50})

        assert service.can(WS, "ai.credits").limit == 150

    def test_boosts_add_on_top_of_max_policy(self, db_session, disabled_cache, clock, seed_catalog):
        service = EntitlementService(db_session, cache=disabled_cache, limit_policy="max", clock=clock)
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")
        service.provision_boost(WS, "ai.credits", {"limit_value": 50})

        assert service.can(WS, "ai.credits").limit == 550

    def test_unlimited_boost(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 100)

        service.provision_boost(WS, "ai.credits", {"boost_type": "unlimited"})

        result = service.can(WS, "ai.credits", quantity=1000)
        assert result.allowed is True
        assert result.unlimited is True

    def test_boost_only_grant(self, service, seed_catalog):
        service.provision_boost(WS, "social.accounts", {"limit_value": 2})

        result = service.can(WS, "social.accounts")

        assert result.allowed is True
        assert result.limit == 2

    def test_provision_boost_unknown_feature(self, service, seed_catalog):
        with pytest.raises(FeatureNotFoundError):
            service.provision_boost(WS, "nope", {"limit_value": 1})

    def test_duration_boost_requires_expiry(self, service, seed_catalog):
        with pytest.raises(ValueError):
            service.provision_boost(WS, "ai.credits", {"duration_type": "duration", "limit_value": 5})

    def test_unknown_option_rejected(self, service, seed_catalog):
        with pytest.raises(ValueError):
            service.provision_boost(WS, "ai.credits", {"limit": 5})

    def test_boost_provision_logged(self, service, seed_catalog):
        boost = service.provision_boost(
            WS, "ai.credits", {"limit_value": 5, "source": "billing", "external_addon_id": "addon_9"}
        )

        log = service.get_entitlement_logs(WS, action=EntitlementAction.BOOST_PROVISIONED)[0]
        assert log.entity_id == boost.id
        assert log.source == EntitlementSource.BILLING.value
        assert boost.external_addon_id == "addon_9"

    def test_cycle_bound_boost_stops_counting_next_cycle(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        service.provision_boost(WS, "ai.credits", {"limit_value": 50, "duration_type": "cycle_bound"})
        assert service.can(WS, "ai.credits").limit == 150

        clock.set(datetime(2026, 4, 16, tzinfo=timezone.utc))

        assert service.can(WS, "ai.credits").limit == 100

    def test_expire_cycle_bound_boosts(self, service, seed_catalog, clock, db_session):
        service.provision_package(WS, "creator")
        cycle = service.provision_boost(WS, "ai.credits", {"limit_value": 50, "duration_type": "cycle_bound"})
        permanent = service.provision_boost(WS, "ai.credits", {"limit_value": 10})
        clock.set(datetime(2026, 4, 16, tzinfo=timezone.utc))

        expired = service.expire_cycle_bound_boosts(WS)

        assert [b.id for b in expired] == [cycle.id]
        db_session.expire_all()
        assert db_session.get(Boost, cycle.id).status == BoostStatus.EXPIRED.value
        assert db_session.get(Boost, permanent.id).status == BoostStatus.ACTIVE.value
        log = service.get_entitlement_logs(WS, action=EntitlementAction.BOOST_EXPIRED)[0]
        assert log.extra_metadata["reason"] == REASON_CYCLE_ENDED

    def test_cycle_bound_boost_in_current_cycle_kept(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        service.provision_boost(WS, "ai.credits", {"limit_value": 50, "duration_type": "cycle_bound"})
        clock.advance(days=10)

        assert service.expire_cycle_bound_boosts(WS) == []

    def test_duration_boost_expiry(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        boost = service.provision_boost(WS, "ai.credits", {
            "duration_type": "duration",
            "limit_value": 20,
            "expires_at": clock.now + timedelta(days=7),
        })
        assert service.can(WS, "ai.credits").limit == 120

        clock.advance(days=8)
        assert service.can(WS, "ai.credits").limit == 100

        expired = service.expire_cycle_bound_boosts(WS)
        assert [b.id for b in expired] == [boost.id]
        log = service.get_entitlement_logs(WS, action=EntitlementAction.BOOST_EXPIRED)[0]
        assert log.extra_metadata["reason"] == REASON_DURATION_EXPIRED

    def test_expire_dry_run(self, service, seed_catalog, clock, db_session):
        service.provision_package(WS, "creator")
        boost = service.provision_boost(WS, "ai.credits", {"limit_value": 5, "duration_type": "cycle_bound"})
        clock.set(datetime(2026, 4, 16, tzinfo=timezone.utc))

        expired = service.expire_cycle_bound_boosts(WS, dry_run=True)

        assert [b.id for b in expired] == [boost.id]
        db_session.expire_all()
        assert db_session.get(Boost, boost.id).status == BoostStatus.ACTIVE.value

    def test_cancel_boost(self, service, seed_catalog, db_session):
        service.provision_package(WS, "creator")
        boost = service.provision_boost(WS, "ai.credits", {"limit_value": 50})

        service.cancel_boost(WS, boost.id, source=EntitlementSource.ADMIN, user_id="admin_1")

        assert service.can(WS, "ai.credits").limit == 100
        assert EntitlementAction.BOOST_CANCELLED.value in actions(service)
        # cancelling again is a no-op
        assert service.cancel_boost(WS, boost.id).status == BoostStatus.CANCELLED.value
        assert actions(service).count(EntitlementAction.BOOST_CANCELLED.value) == 1

    def test_cancel_boost_other_workspace(self, service, seed_catalog):
        boost = service.provision_boost(WS, "ai.credits", {"limit_value": 1})

        with pytest.raises(BoostNotFoundError):
            service.cancel_boost(OTHER_WS, boost.id)

    def test_active_boosts_sorted_by_expiry(self, service, seed_catalog, clock):
        open_ended = service.provision_boost(WS, "ai.credits", {"limit_value": 1})
        later = service.provision_boost(WS, "ai.credits", {
            "duration_type": "duration", "limit_value": 1, "expires_at": clock.now + timedelta(days=9),
        })
        sooner = service.provision_boost(WS, "ai.credits", {
            "duration_type": "duration", "limit_value": 1, "expires_at": clock.now + timedelta(days=2),
        })

        boosts = service.get_active_boosts(WS)

        assert [b.id for b in boosts] == [sooner.id, later.id, open_ended.id]
        assert service.get_active_boosts(WS, feature_code="social.accounts") == []


# =============================================================================
# Package lifecycle
# =============================================================================


class TestPackageLifecycle:
    """Provisioning, suspension, reactivation and revocation."""

    def test_provision_unknown_package(self, service, seed_catalog):
        with pytest.raises(PackageNotFoundError) as exc_info:
            service.provision_package(WS, "platinum")
        assert exc_info.value.to_dict()["code"] == "platinum"

    def test_provision_inactive_package(self, service, seed_catalog, db_session):
        seed_catalog["packages"]["agency"].is_active = False
        db_session.commit()

        with pytest.raises(PackageNotFoundError):
            service.provision_package(WS, "agency")

    def test_provision_records_options(self, service, seed_catalog, clock):
        anchor = clock.now - timedelta(days=3)

        wp = service.provision_package(WS, "creator", {
            "blesta_service_id": "svc_42",
            "billing_cycle_anchor": anchor,
            "source": "billing",
            "metadata": {"order": "o_1"},
        })

        assert wp.external_service_id == "svc_42"
        assert wp.billing_cycle_anchor == anchor
        assert wp.extra_metadata == {"order": "o_1"}
        log = service.get_entitlement_logs(WS, action=EntitlementAction.PACKAGE_PROVISIONED)[0]
        assert log.source == "billing"
        assert log.new_values["package_code"] == "creator"

    def test_new_base_package_replaces_previous(self, service, seed_catalog, db_session):
        first = service.provision_package(WS, "creator")
        second = service.provision_package(WS, "agency")

        db_session.expire_all()
        assert db_session.get(WorkspacePackage, first.id).status == WorkspacePackageStatus.CANCELLED.value
        assert db_session.get(WorkspacePackage, second.id).status == WorkspacePackageStatus.ACTIVE.value
        cancelled = service.get_entitlement_logs(WS, action=EntitlementAction.PACKAGE_CANCELLED)
        assert len(cancelled) == 1
        assert cancelled[0].extra_metadata["reason"] == REASON_REPLACED
        service.assert_single_base_package(WS)

    def test_reprovisioning_same_base_creates_new_row(self, service, seed_catalog, db_session):
        service.provision_package(WS, "creator")
        service.provision_package(WS, "creator")

        rows = db_session.query(WorkspacePackage).filter_by(workspace_id=WS).all()
        assert len(rows) == 2
        assert sorted(r.status for r in rows) == ["active", "cancelled"]

    def test_addon_does_not_replace_base(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")

        codes = sorted(wp.package.code for wp in service.get_active_packages(WS))
        assert codes == ["ai-addon", "creator"]

    def test_base_replacement_also_cancels_suspended_base(self, service, seed_catalog, db_session):
        first = service.provision_package(WS, "creator")
        service.suspend_workspace(WS)

        service.provision_package(WS, "agency")

        db_session.expire_all()
        assert db_session.get(WorkspacePackage, first.id).status == WorkspacePackageStatus.CANCELLED.value

    def test_suspend_and_reactivate(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")

        suspended = service.suspend_workspace(WS, source=EntitlementSource.ADMIN, user_id="admin_1")

        assert len(suspended) == 2
        assert service.can(WS, "ai.credits").allowed is False
        assert actions(service).count(EntitlementAction.PACKAGE_SUSPENDED.value) == 2

        reactivated = service.reactivate_workspace(WS)

        assert len(reactivated) == 2
        assert service.can(WS, "ai.credits").limit == 600
        assert actions(service).count(EntitlementAction.PACKAGE_REACTIVATED.value) == 2

    def test_suspend_without_active_packages_is_noop(self, service, seed_catalog):
        assert service.suspend_workspace(WS) == []
        assert service.reactivate_workspace(WS) == []
        assert actions(service) == []

    def test_suspend_twice_logs_once(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.suspend_workspace(WS)
        service.suspend_workspace(WS)

        assert actions(service).count(EntitlementAction.PACKAGE_SUSPENDED.value) == 1

    def test_reactivate_keeps_newest_base(self, service, seed_catalog, db_session, clock):
        current = service.provision_package(WS, "creator")
        stale = WorkspacePackage(
            workspace_id=WS,
            package_id=seed_catalog["packages"]["agency"].id,
            status=WorkspacePackageStatus.SUSPENDED.value,
            starts_at=clock.now - timedelta(days=30),
        )
        db_session.add(stale)
        db_session.commit()
        service.suspend_workspace(WS)

        service.reactivate_workspace(WS)

        db_session.expire_all()
        assert db_session.get(WorkspacePackage, current.id).status == WorkspacePackageStatus.ACTIVE.value
        assert db_session.get(WorkspacePackage, stale.id).status == WorkspacePackageStatus.CANCELLED.value
        service.assert_single_base_package(WS)

    def test_reactivation_conflict_is_logged_and_resolves_to_newest(self, service, seed_catalog, db_session, clock):
        service.provision_package(WS, "creator")
        stale = WorkspacePackage(
            workspace_id=WS,
            package_id=seed_catalog["packages"]["agency"].id,
            status=WorkspacePackageStatus.SUSPENDED.value,
            starts_at=clock.now - timedelta(days=30),
        )
        db_session.add(stale)
        db_session.commit()
        service.suspend_workspace(WS)

        reactivated = service.reactivate_workspace(WS)

        assert len(reactivated) == 2
        assert [wp.package.code for wp in service.get_active_packages(WS)] == ["creator"]
        assert service.can(WS, "workspace.members").allowed is False
        log = service.get_entitlement_logs(WS, action=EntitlementAction.PACKAGE_CANCELLED)[0]
        assert log.extra_metadata["reason"] == REASON_REACTIVATION_CONFLICT
        assert log.entity_id == stale.id

    def test_revoke_package(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")

        revoked = service.revoke_package(WS, "ai-addon")

        assert len(revoked) == 1
        assert service.can(WS, "ai.credits").limit == 100
        log = service.get_entitlement_logs(WS, action=EntitlementAction.PACKAGE_CANCELLED)[0]
        assert log.extra_metadata["reason"] == REASON_REVOKED

    def test_revoke_is_idempotent(self, service, seed_catalog):
        service.provision_package(WS, "ai-addon")
        service.revoke_package(WS, "ai-addon")

        assert service.revoke_package(WS, "ai-addon") == []
        assert actions(service).count(EntitlementAction.PACKAGE_CANCELLED.value) == 1

    def test_revoke_unknown_package(self, service, seed_catalog):
        with pytest.raises(PackageNotFoundError):
            service.revoke_package(WS, "platinum")

    def test_revoke_suspended_package(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.suspend_workspace(WS)

        assert len(service.revoke_package(WS, "creator")) == 1
        assert service.reactivate_workspace(WS) == []

    def test_assert_single_base_package_detects_violation(self, service, seed_catalog, db_session, clock):
        service.provision_package(WS, "creator")
        db_session.add(WorkspacePackage(
            workspace_id=WS,
            package_id=seed_catalog["packages"]["agency"].id,
            status=WorkspacePackageStatus.ACTIVE.value,
            starts_at=clock.now,
        ))
        db_session.commit()

        with pytest.raises(InvariantViolationError):
            service.assert_single_base_package(WS)


# =============================================================================
# Caching and failure handling
# =============================================================================


class TestCaching:
    """Cache population and write-path invalidation."""

    def test_snapshot_cached(self, cached_service, seed_catalog, entitlement_cache, db_session, clock):
        cached_service.provision_package(WS, "creator")
        assert cached_service.can(WS, "social.accounts").used == 0

        # written behind the service's back, so the cache is not invalidated
        db_session.add(UsageRecord(workspace_id=WS, feature_code="social.accounts", quantity=3, recorded_at=clock.now))
        db_session.commit()

        assert cached_service.can(WS, "social.accounts").used == 0
        assert entitlement_cache.get(WS, "social.accounts") is not None

    def test_record_usage_invalidates_feature(self, cached_service, seed_catalog, entitlement_cache):
        cached_service.provision_package(WS, "creator")
        cached_service.can(WS, "social.accounts")
        cached_service.can(WS, "tier.apollo")

        cached_service.record_usage(WS, "social.accounts", 2)

        assert entitlement_cache.get(WS, "social.accounts") is None
        assert entitlement_cache.get(WS, "tier.apollo") is not None
        assert cached_service.can(WS, "social.accounts").used == 2

    def test_pooled_usage_invalidates_workspace(self, cached_service, seed_catalog, entitlement_cache):
        cached_service.provision_package(WS, "creator")
        cached_service.can(WS, "ai.credits")
        cached_service.can(WS, "ai.images")

        cached_service.record_usage(WS, "ai.images", 10)

        assert entitlement_cache.get(WS, "ai.credits") is None
        assert entitlement_cache.get(WS, "ai.images") is None
        assert cached_service.can(WS, "ai.credits").used == 10

    def test_lifecycle_invalidates_workspace(self, cached_service, seed_catalog, entitlement_cache):
        cached_service.provision_package(WS, "creator")
        assert cached_service.can(WS, "ai.credits").limit == 100

        cached_service.provision_package(WS, "ai-addon")

        assert cached_service.can(WS, "ai.credits").limit == 600

    def test_one_cached_snapshot_serves_every_quantity(self, cached_service, seed_catalog):
        cached_service.provision_package(WS, "creator")
        cached_service.record_usage(WS, "social.accounts", 4)

        assert cached_service.can(WS, "social.accounts", quantity=1).allowed is True
        assert cached_service.can(WS, "social.accounts", quantity=2).allowed is False

    def test_write_in_one_process_reaches_another(self, db_session, seed_catalog, clock, shared_redis):
        writer = EntitlementService(
            db_session, cache=EntitlementCache(redis_client=shared_redis, enabled=True), clock=clock
        )
        reader = EntitlementService(
            db_session, cache=EntitlementCache(redis_client=shared_redis, enabled=True), clock=clock
        )
        writer.provision_package(WS, "creator")
        assert reader.can(WS, "social.accounts").used == 0

        writer.record_usage(WS, "social.accounts", 3)

        assert reader.can(WS, "social.accounts").used == 3

    def test_invalidation_failure_does_not_fail_write(self, db_session, seed_catalog, clock):
        cache = MagicMock()
        cache.get.return_value = None
        cache.invalidate.side_effect = RuntimeError("redis down")
        service = EntitlementService(db_session, cache=cache, clock=clock)

        wp = service.provision_package(WS, "creator")

        assert wp.status == WorkspacePackageStatus.ACTIVE.value

    def test_no_invalidation_when_write_fails(self, db_session, seed_catalog, clock):
        cache = MagicMock()
        service = EntitlementService(db_session, cache=cache, clock=clock)

        with pytest.raises(PackageNotFoundError):
            service.provision_package(WS, "platinum")

        cache.invalidate.assert_not_called()

    def test_module_level_invalidate(self, monkeypatch, entitlement_cache):
        from workspace_entitlements.entitlements import cache as cache_module
        from workspace_entitlements.entitlements import service as service_module

        monkeypatch.setattr(cache_module, "_cache_instance", entitlement_cache)
        entitlement_cache.set(WS, "ai.credits", MagicMock(to_json=lambda: "{}"))

        assert service_module.invalidate_entitlements(WS, reason="manual") == 1


class TestFailClosed:
    """Evaluation errors raise instead of granting."""

    def test_store_error_raises_evaluation_error(self, service, seed_catalog, monkeypatch, caplog):
        boom = RuntimeError("connection reset")
        monkeypatch.setattr(service.catalog, "get_feature", MagicMock(side_effect=boom))

        with caplog.at_level("CRITICAL"):
            with pytest.raises(EntitlementEvaluationError) as exc_info:
                service.can(WS, "ai.credits")

        assert exc_info.value.cause is boom
        assert exc_info.value.to_dict()["error"] == "ENTITLEMENT_EVAL_FAILED"
        assert any("support alert" in record.getMessage() for record in caplog.records)

    def test_missing_workspace_id(self, service, seed_catalog):
        with pytest.raises(EntitlementEvaluationError):
            service.can("", "ai.credits")

    def test_denials_go_to_audit_logger(self, db_session, disabled_cache, clock, seed_catalog):
        audit = MagicMock(spec=EntitlementAuditLogger)
        service = EntitlementService(db_session, cache=disabled_cache, audit_logger=audit, clock=clock)

        service.can(WS, "ai.credits")

        audit.log_denial.assert_called_once()
        workspace_id, result = audit.log_denial.call_args[0]
        assert workspace_id == WS
        assert result.allowed is False

    def test_evaluate_does_not_audit(self, db_session, disabled_cache, clock, seed_catalog):
        audit = MagicMock(spec=EntitlementAuditLogger)
        service = EntitlementService(db_session, cache=disabled_cache, audit_logger=audit, clock=clock)

        result = service.evaluate(WS, "ai.credits")

        assert result.allowed is False
        assert result.reason == service.can(WS, "ai.credits").reason
        audit.log_denial.assert_called_once()


# =============================================================================
# Billing cycle reset
# =============================================================================


class TestBillingCycleReset:
    """reset_billing_cycle()."""

    def test_first_cycle_not_reset(self, service, seed_catalog):
        service.provision_package(WS, "creator")

        result = service.reset_billing_cycle(WS)

        assert result.cycle_reset is False
        assert result.skipped_reason == "First billing cycle"

    def test_without_base_package(self, service, seed_catalog):
        result = service.reset_billing_cycle(WS)

        assert result.cycle_reset is False
        assert result.skipped_reason == "No active base package"

    def test_new_cycle_logged_once(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 10)
        service.record_usage(WS, "social.accounts", 1)
        clock.set(datetime(2026, 4, 20, tzinfo=timezone.utc))

        first = service.reset_billing_cycle(WS)
        second = service.reset_billing_cycle(WS)

        assert first.cycle_reset is True
        assert first.previous_cycle_records == 2
        assert first.cycle_start == "2026-04-15T12:00:00+00:00"
        assert second.cycle_reset is False
        assert second.skipped_reason == "Cycle already reset"
        assert actions(service).count(EntitlementAction.CYCLE_RESET.value) == 1

    def test_reset_expires_cycle_bound_boosts(self, service, seed_catalog, clock):
        service.provision_package(WS, "creator")
        boost = service.provision_boost(WS, "ai.credits", {"limit_value": 5, "duration_type": "cycle_bound"})
        clock.set(datetime(2026, 4, 20, tzinfo=timezone.utc))

        result = service.reset_billing_cycle(WS)

        assert result.boosts_expired == [boost.id]
        assert service.get_active_boosts(WS) == []

    def test_dry_run_writes_nothing(self, service, seed_catalog, clock, db_session):
        service.provision_package(WS, "creator")
        service.provision_boost(WS, "ai.credits", {"limit_value": 5, "duration_type": "cycle_bound"})
        clock.set(datetime(2026, 4, 20, tzinfo=timezone.utc))

        result = service.reset_billing_cycle(WS, dry_run=True)

        assert result.dry_run is True
        assert result.cycle_reset is True
        assert len(result.boosts_expired) == 1
        assert db_session.query(EntitlementLog).filter_by(action=EntitlementAction.CYCLE_RESET.value).count() == 0
        assert db_session.query(Boost).filter_by(status=BoostStatus.ACTIVE.value).count() == 1

    def test_usage_ledger_is_kept(self, service, seed_catalog, clock, db_session):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 10)
        clock.set(datetime(2026, 4, 20, tzinfo=timezone.utc))

        service.reset_billing_cycle(WS)

        assert db_session.query(UsageRecord).count() == 1
        assert service.can(WS, "ai.credits").used == 0


# =============================================================================
# Read models
# =============================================================================


class TestReadModels:
    def test_usage_summary_grouped_by_category(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.record_usage(WS, "ai.credits", 85)

        summary = service.get_usage_summary(WS)

        assert set(summary) == {"ai", "social", "tier", "workspace"}
        credits = next(row for row in summary["ai"] if row["code"] == "ai.credits")
        assert credits["used"] == 85
        assert credits["percentage"] == 85.0
        assert credits["near_limit"] is True
        members = summary["workspace"][0]
        assert members["allowed"] is False

    def test_entitlement_logs_limit(self, service, seed_catalog):
        service.provision_package(WS, "creator")
        service.provision_package(WS, "ai-addon")
        service.suspend_workspace(WS)

        assert len(service.get_entitlement_logs(WS)) == 4
        assert len(service.get_entitlement_logs(WS, limit=2)) == 2
        assert service.get_entitlement_logs(OTHER_WS) == []

    def test_current_cycle_bounds(self, service, seed_catalog, clock):
        assert service.current_cycle_bounds(WS) == (
            datetime(2026, 3, 1, tzinfo=timezone.utc),
            datetime(2026, 4, 1, tzinfo=timezone.utc),
        )
        service.provision_package(WS, "creator")
        assert service.current_cycle_bounds(WS)[0] == clock.now

    def test_list_workspaces_with_active_packages(self, service, seed_catalog):
        service.provision_package("ws_b", "creator")
        service.provision_package("ws_a", "ai-addon")
        service.provision_package("ws_c", "creator")
        service.suspend_workspace("ws_c")

        assert service.list_workspaces_with_active_packages() == ["ws_a", "ws_b"]
