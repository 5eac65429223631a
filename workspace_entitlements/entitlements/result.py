"""
EntitlementResult - the outcome of a can() check.

Results are computed, never persisted. The resolver caches a
quantity-independent snapshot (limit, used, grant state) and derives the
allow decision for the requested quantity with for_quantity(), so one
cached entry serves every quantity asked for.
"""

import json
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Optional

NEAR_LIMIT_PERCENTAGE = 80.0


@dataclass(frozen=True)
class EntitlementResult:
    """
    Allow/deny decision for one (workspace, feature) pair.

    limit is None for unlimited grants and for boolean features.
    remaining is max(0, limit - used) and None when limit is None.
    """

    allowed: bool
    limit: Optional[int] = None
    used: int = 0
    remaining: Optional[int] = None
    unlimited: bool = False
    reason: Optional[str] = None
    feature_code: Optional[str] = None
    feature_name: Optional[str] = None
    granted: bool = False

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def allowed_result(
        cls,
        feature_code: str,
        limit: Optional[int] = None,
        used: int = 0,
        feature_name: Optional[str] = None,
    ) -> "EntitlementResult":
        return cls(
            allowed=True,
            limit=limit,
            used=used,
            remaining=_remaining(limit, used),
            unlimited=False,
            feature_code=feature_code,
            feature_name=feature_name,
            granted=True,
        )

    @classmethod
    def unlimited_result(
        cls,
        feature_code: str,
        used: int = 0,
        feature_name: Optional[str] = None,
    ) -> "EntitlementResult":
        return cls(
            allowed=True,
            limit=None,
            used=used,
            remaining=None,
            unlimited=True,
            feature_code=feature_code,
            feature_name=feature_name,
            granted=True,
        )

    @classmethod
    def denied_result(
        cls,
        feature_code: str,
        reason: str,
        limit: Optional[int] = None,
        used: int = 0,
        feature_name: Optional[str] = None,
        granted: bool = False,
    ) -> "EntitlementResult":
        return cls(
            allowed=False,
            limit=limit,
            used=used,
            remaining=_remaining(limit, used),
            unlimited=False,
            reason=reason,
            feature_code=feature_code,
            feature_name=feature_name,
            granted=granted,
        )

    @classmethod
    def feature_missing(cls, feature_code: str) -> "EntitlementResult":
        return cls.denied_result(
            feature_code, f"Feature '{feature_code}' does not exist."
        )

    @classmethod
    def not_in_plan(cls, feature_code: str, feature_name: str) -> "EntitlementResult":
        return cls.denied_result(
            feature_code,
            f"Your plan does not include {feature_name}.",
            feature_name=feature_name,
        )

    # ------------------------------------------------------------------
    # Quantity evaluation
    # ------------------------------------------------------------------

    def for_quantity(self, quantity: int) -> "EntitlementResult":
        """
        Decide for `quantity` units against this snapshot.

        Ungranted results stay denied; unlimited and boolean grants stay
        allowed; metered grants allow only when used + quantity fits.
        """
        if not self.granted:
            return self
        if self.unlimited or self.limit is None:
            return replace(self, allowed=True, reason=None)
        if self.used + quantity <= self.limit:
            return replace(self, allowed=True, reason=None)
        name = self.feature_name or self.feature_code
        return replace(
            self,
            allowed=False,
            reason=f"You have reached your {name} limit ({self.used}/{self.limit} used).",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_unlimited(self) -> bool:
        return self.unlimited

    @property
    def usage_percentage(self) -> Optional[float]:
        """Used as a percentage of the limit; None without a numeric limit."""
        if self.unlimited or self.limit is None:
            return None
        if self.limit <= 0:
            return 100.0 if self.used > 0 else 0.0
        return round(self.used / self.limit * 100, 1)

    @property
    def is_near_limit(self) -> bool:
        return self.has_reached(NEAR_LIMIT_PERCENTAGE)

    def has_reached(self, percentage: float) -> bool:
        """Exact test of used >= percentage% of limit; usage_percentage is rounded for display."""
        if self.unlimited or self.limit is None:
            return False
        if self.limit <= 0:
            return self.usage_percentage >= percentage
        return self.used * 100 >= percentage * self.limit

    @property
    def is_at_limit(self) -> bool:
        return self.remaining is not None and self.remaining <= 0

    def to_dict(self) -> Dict[str, Any]:
        """Flat JSON-ready payload; reason only present when denied."""
        payload: Dict[str, Any] = {
            "allowed": self.allowed,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "unlimited": self.unlimited,
            "feature_code": self.feature_code,
        }
        if not self.allowed:
            payload["reason"] = self.reason
        return payload

    def to_json(self) -> str:
        """Full serialisation, used by the cache."""
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: str) -> "EntitlementResult":
        return cls(**json.loads(data))


def _remaining(limit: Optional[int], used: int) -> Optional[int]:
    if limit is None:
        return None
    return max(0, limit - used)
