"""
Typed repository over the feature/package catalog.

The catalog is data-driven (rows in the store of record, seeded from
config/catalog.yml) so that features and packages can be added without a
deploy. Lookups return None for unknown or deactivated entries; callers
decide whether that is a denial or an error.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from workspace_entitlements.models.feature import Feature, FeatureType
from workspace_entitlements.models.package import Package, PackageFeature

logger = logging.getLogger(__name__)


class EntitlementCatalog:
    """Read access to features, packages and their grants."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_feature(self, code: str) -> Optional[Feature]:
        """Active feature by code, None if missing or deactivated."""
        return (
            self.db.query(Feature)
            .filter(Feature.code == code, Feature.is_active.is_(True))
            .first()
        )

    def get_package(self, code: str) -> Optional[Package]:
        """Active package by code, None if missing or deactivated."""
        return (
            self.db.query(Package)
            .filter(Package.code == code, Package.is_active.is_(True))
            .first()
        )

    def resolve_pool(self, feature: Feature) -> Feature:
        """Feature whose grants and usage `feature` shares (itself when unpooled)."""
        if not feature.parent_code:
            return feature
        parent = self.get_feature(feature.parent_code)
        if parent is None:
            logger.warning(
                "Pool feature missing, resolving feature on its own",
                extra={"feature_code": feature.code, "parent_code": feature.parent_code},
            )
            return feature
        return parent

    def is_pooled(self, feature: Feature) -> bool:
        """True when the feature shares its pool with other features."""
        if feature.parent_code:
            return True
        return (
            self.db.query(Feature.id)
            .filter(Feature.parent_code == feature.code)
            .first()
            is not None
        )

    def list_active_features(self, feature_type: Optional[FeatureType] = None) -> List[Feature]:
        query = self.db.query(Feature).filter(Feature.is_active.is_(True))
        if feature_type is not None:
            query = query.filter(Feature.type == feature_type.value)
        return query.order_by(Feature.category, Feature.sort_order, Feature.code).all()

    def list_active_packages(self) -> List[Package]:
        return (
            self.db.query(Package)
            .filter(Package.is_active.is_(True))
            .order_by(Package.sort_order, Package.code)
            .all()
        )

    def grant_for(self, package_id: str, feature_id: str) -> Optional[PackageFeature]:
        return (
            self.db.query(PackageFeature)
            .filter(
                PackageFeature.package_id == package_id,
                PackageFeature.feature_id == feature_id,
            )
            .first()
        )

    def grants_for_feature(self, feature_id: str, package_ids: List[str]) -> List[PackageFeature]:
        if not package_ids:
            return []
        return (
            self.db.query(PackageFeature)
            .filter(
                PackageFeature.feature_id == feature_id,
                PackageFeature.package_id.in_(package_ids),
            )
            .all()
        )

    def feature_codes_for_package(self, package: Package) -> List[str]:
        return [grant.feature.code for grant in package.features if grant.feature is not None]
