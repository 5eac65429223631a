"""
Structured error classes for entitlement operations.

Denial is never an error: can() returns a denied EntitlementResult.
These exceptions cover lifecycle operations that reference something
missing, broken invariants, and evaluation failures.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "ENTITLEMENT_ERROR"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": str(self),
        }


class NotFoundError(EntitlementError):
    """A catalog entry or workspace row referenced by an operation does not exist."""

    error_code = "NOT_FOUND"

    def __init__(self, kind: str, code: str):
        self.kind = kind
        self.code = code
        super().__init__(f"{kind} '{code}' does not exist.")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": str(self),
            "kind": self.kind,
            "code": self.code,
        }


class FeatureNotFoundError(NotFoundError):
    def __init__(self, code: str):
        super().__init__("Feature", code)


class PackageNotFoundError(NotFoundError):
    def __init__(self, code: str):
        super().__init__("Package", code)


class BoostNotFoundError(NotFoundError):
    def __init__(self, boost_id: str):
        super().__init__("Boost", boost_id)


class InvariantViolationError(EntitlementError):
    """Persistent state contradicts an entitlement invariant."""

    error_code = "INVARIANT_VIOLATION"

    def __init__(self, workspace_id: str, detail: str):
        self.workspace_id = workspace_id
        self.detail = detail
        super().__init__(f"Invariant violated for workspace {workspace_id}: {detail}")


class EntitlementEvaluationError(EntitlementError):
    """
    Raised when entitlement evaluation fails (fail-closed).

    Carries a machine-readable error_code for callers to surface.
    """

    error_code = "ENTITLEMENT_EVAL_FAILED"

    def __init__(
        self,
        workspace_id: str,
        detail: str,
        cause: Optional[Exception] = None,
    ):
        self.workspace_id = workspace_id
        self.detail = detail
        self.cause = cause
        super().__init__(f"Entitlement evaluation failed for {workspace_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "workspace_id": self.workspace_id,
        }


class CatalogConfigError(EntitlementError):
    """The catalog YAML is malformed or references unknown entries."""

    error_code = "CATALOG_CONFIG_INVALID"
