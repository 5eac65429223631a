"""
Catalog configuration loader.

Loads the feature/package catalog from config/catalog.yml and syncs it
into the store of record, so a deploy (or the seed_catalog job) brings the
database in line with the file.

Sync rules:
- Features and packages are matched by code; missing rows are created
- name, description, category, sort order and active flag are updated
- type, reset_type, rolling_window_days, parent and is_base_package are
  never changed on an existing row; mismatches are reported as conflicts
- Package grants are upserted; grants no longer in the file are removed

Usage:
    from workspace_entitlements.entitlements.loader import get_catalog_loader

    loader = get_catalog_loader()
    result = loader.sync(db_session)
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy.orm import Session

from workspace_entitlements.entitlements.cache import EntitlementCache, get_entitlement_cache
from workspace_entitlements.entitlements.errors import CatalogConfigError
from workspace_entitlements.models.feature import Feature, FeatureType, ResetType
from workspace_entitlements.models.package import Package, PackageFeature

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "catalog.yml"


# ---------------------------------------------------------------------------
# File schema
# ---------------------------------------------------------------------------

class FeatureDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    parent: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, max_length=50)
    type: FeatureType = FeatureType.LIMIT
    reset_type: ResetType = ResetType.NONE
    rolling_window_days: Optional[int] = Field(None, ge=1)
    sort_order: int = 0
    active: bool = True


class PackageDefinition(BaseModel):
    """
    A package and its grants.

    features maps feature code to limit: an integer for metered features,
    null or true for unlimited / on-off grants.
    """

    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    base: bool = False
    stackable: bool = True
    sort_order: int = 0
    active: bool = True
    features: Dict[str, Optional[int]] = Field(default_factory=dict)

    @field_validator("features", mode="before")
    @classmethod
    def normalise_grants(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, list):
            return {code: None for code in v}
        if isinstance(v, dict):
            grants = {}
            for code, limit in v.items():
                if limit is False:
                    raise ValueError(f"Grant for {code} is false; omit the feature instead")
                if isinstance(limit, int) and not isinstance(limit, bool) and limit < 0:
                    raise ValueError(f"Grant limit for {code} must be >= 0")
                grants[code] = None if limit is True else limit
            return grants
        return v


class CatalogDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = 1
    features: List[FeatureDefinition] = Field(default_factory=list)
    packages: List[PackageDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_references(self):
        feature_codes = [f.code for f in self.features]
        duplicates = {code for code in feature_codes if feature_codes.count(code) > 1}
        if duplicates:
            raise ValueError(f"Duplicate feature codes: {sorted(duplicates)}")

        package_codes = [p.code for p in self.packages]
        duplicates = {code for code in package_codes if package_codes.count(code) > 1}
        if duplicates:
            raise ValueError(f"Duplicate package codes: {sorted(duplicates)}")

        by_code = {f.code: f for f in self.features}
        for feature in self.features:
            if feature.parent is None:
                continue
            parent = by_code.get(feature.parent)
            if parent is None:
                raise ValueError(f"Feature {feature.code} has unknown parent {feature.parent}")
            if parent.parent is not None:
                raise ValueError(f"Feature {feature.code}: pools are one level deep")

        for package in self.packages:
            unknown = sorted(set(package.features) - set(by_code))
            if unknown:
                raise ValueError(f"Package {package.code} grants unknown features {unknown}")
            pooled = sorted(code for code in package.features if by_code[code].parent)
            if pooled:
                raise ValueError(
                    f"Package {package.code} grants pooled features {pooled}; grant the pool instead"
                )
        return self


# ---------------------------------------------------------------------------
# Sync outcome
# ---------------------------------------------------------------------------

@dataclass
class CatalogSyncResult:
    dry_run: bool = False
    features_created: List[str] = field(default_factory=list)
    features_updated: List[str] = field(default_factory=list)
    packages_created: List[str] = field(default_factory=list)
    packages_updated: List[str] = field(default_factory=list)
    grants_upserted: int = 0
    grants_removed: int = 0
    conflicts: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.features_created
            or self.features_updated
            or self.packages_created
            or self.packages_updated
            or self.grants_upserted
            or self.grants_removed
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class CatalogLoader:
    """Reads config/catalog.yml and syncs it into the database."""

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = config_path
        self._definition: Optional[CatalogDefinition] = None
        self._load_lock = Lock()

    def _resolve_path(self) -> Path:
        explicit = self._config_path or os.getenv("ENTITLEMENT_CATALOG_PATH")
        if explicit:
            return Path(explicit)

        candidates = [
            Path(__file__).parent.parent / "config" / CATALOG_FILENAME,
            Path(os.getcwd()) / "config" / CATALOG_FILENAME,
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"{CATALOG_FILENAME} not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> CatalogDefinition:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading entitlement catalog from %s", path)

            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

            try:
                definition = CatalogDefinition.model_validate(raw)
            except ValidationError as exc:
                raise CatalogConfigError(f"Invalid catalog {path}: {exc}") from exc

            logger.info(
                "Loaded entitlement catalog: features=%d, packages=%d",
                len(definition.features),
                len(definition.packages),
            )
            self._definition = definition
            return definition

    @property
    def definition(self) -> CatalogDefinition:
        if self._definition is None:
            return self._load()
        return self._definition

    def reload(self) -> CatalogDefinition:
        """Re-read the YAML from disk."""
        return self._load()

    def sync(
        self,
        db: Session,
        dry_run: bool = False,
        cache: Optional[EntitlementCache] = None,
    ) -> CatalogSyncResult:
        """
        Upsert the catalog into the database.

        With dry_run the changes are computed and rolled back. A real sync
        that changed anything drops every cached entitlement.
        """
        definition = self.definition
        result = CatalogSyncResult(dry_run=dry_run)

        try:
            features = self._sync_features(db, definition, result)
            db.flush()
            self._sync_packages(db, definition, features, result)
            db.flush()
            if dry_run:
                db.rollback()
            else:
                db.commit()
        except Exception:
            db.rollback()
            raise

        if result.conflicts:
            logger.warning("Catalog conflicts left unchanged", extra={"conflicts": result.conflicts})

        if result.changed and not dry_run:
            (cache or get_entitlement_cache()).invalidate_all(reason="catalog.sync")

        logger.info("Catalog sync complete", extra=result.to_dict())
        return result

    def _sync_features(
        self,
        db: Session,
        definition: CatalogDefinition,
        result: CatalogSyncResult,
    ) -> Dict[str, Feature]:
        existing = {feature.code: feature for feature in db.query(Feature).all()}

        for entry in definition.features:
            feature = existing.get(entry.code)
            if feature is None:
                feature = Feature(
                    code=entry.code,
                    name=entry.name,
                    description=entry.description,
                    parent_code=entry.parent,
                    category=entry.category,
                    type=entry.type.value,
                    reset_type=entry.reset_type.value,
                    rolling_window_days=entry.rolling_window_days,
                    sort_order=entry.sort_order,
                    is_active=entry.active,
                )
                db.add(feature)
                existing[entry.code] = feature
                result.features_created.append(entry.code)
                continue

            fixed = {
                "type": entry.type.value,
                "reset_type": entry.reset_type.value,
                "rolling_window_days": entry.rolling_window_days,
                "parent_code": entry.parent,
            }
            for attr, wanted in fixed.items():
                if getattr(feature, attr) != wanted:
                    result.conflicts.append(
                        f"feature {entry.code}: {attr} is {getattr(feature, attr)!r}, file has {wanted!r}"
                    )

            if _apply(feature, {
                "name": entry.name,
                "description": entry.description,
                "category": entry.category,
                "sort_order": entry.sort_order,
                "is_active": entry.active,
            }):
                result.features_updated.append(entry.code)

        return existing

    def _sync_packages(
        self,
        db: Session,
        definition: CatalogDefinition,
        features: Dict[str, Feature],
        result: CatalogSyncResult,
    ) -> None:
        existing = {package.code: package for package in db.query(Package).all()}

        for entry in definition.packages:
            package = existing.get(entry.code)
            if package is None:
                package = Package(
                    code=entry.code,
                    name=entry.name,
                    description=entry.description,
                    is_base_package=entry.base,
                    is_stackable=entry.stackable,
                    sort_order=entry.sort_order,
                    is_active=entry.active,
                )
                db.add(package)
                result.packages_created.append(entry.code)
            else:
                if package.is_base_package != entry.base:
                    result.conflicts.append(
                        f"package {entry.code}: is_base_package is {package.is_base_package!r}, "
                        f"file has {entry.base!r}"
                    )
                if _apply(package, {
                    "name": entry.name,
                    "description": entry.description,
                    "is_stackable": entry.stackable,
                    "sort_order": entry.sort_order,
                    "is_active": entry.active,
                }):
                    result.packages_updated.append(entry.code)

            self._sync_grants(package, entry, features, result)

    def _sync_grants(
        self,
        package: Package,
        entry: PackageDefinition,
        features: Dict[str, Feature],
        result: CatalogSyncResult,
    ) -> None:
        current = {grant.feature.code: grant for grant in package.features if grant.feature is not None}

        for code, limit in entry.features.items():
            grant = current.get(code)
            if grant is None:
                package.features.append(PackageFeature(feature=features[code], limit_value=limit))
                result.grants_upserted += 1
            elif grant.limit_value != limit:
                grant.limit_value = limit
                result.grants_upserted += 1

        for code, grant in current.items():
            if code not in entry.features:
                package.features.remove(grant)
                result.grants_removed += 1


def _apply(row: Any, values: Dict[str, Any]) -> bool:
    changed = False
    for attr, value in values.items():
        if getattr(row, attr) != value:
            setattr(row, attr, value)
            changed = True
    return changed


_loader_instance: Optional[CatalogLoader] = None
_loader_lock = Lock()


def get_catalog_loader() -> CatalogLoader:
    """Get the process-wide CatalogLoader (default path resolution)."""
    global _loader_instance
    if _loader_instance is None:
        with _loader_lock:
            if _loader_instance is None:
                _loader_instance = CatalogLoader()
    return _loader_instance
