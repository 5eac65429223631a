"""
Entitlement engine.

EntitlementService (entitlements.service) is the entry point: can(),
record_usage() and the package/boost lifecycle. Import it from its module;
this package only re-exports the dependency-free result and error types so
that models can import billing_cycle without a cycle.
"""

from workspace_entitlements.entitlements.errors import (
    BoostNotFoundError,
    CatalogConfigError,
    EntitlementError,
    EntitlementEvaluationError,
    FeatureNotFoundError,
    InvariantViolationError,
    NotFoundError,
    PackageNotFoundError,
)
from workspace_entitlements.entitlements.result import EntitlementResult

__all__ = [
    "BoostNotFoundError",
    "CatalogConfigError",
    "EntitlementError",
    "EntitlementEvaluationError",
    "EntitlementResult",
    "FeatureNotFoundError",
    "InvariantViolationError",
    "NotFoundError",
    "PackageNotFoundError",
]
