"""
Validated option maps for provisioning operations.

provision_package() and provision_boost() accept plain dicts (the shape a
billing webhook or admin form hands over); these models validate them and
fill defaults. pydantic.ValidationError is a ValueError, so bad options
surface as ValueError to callers.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from workspace_entitlements.models.base import as_utc
from workspace_entitlements.models.boost import BoostDuration, BoostType
from workspace_entitlements.models.entitlement_log import EntitlementSource


class _ProvisionOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    source: EntitlementSource = Field(EntitlementSource.SYSTEM)
    user_id: Optional[str] = Field(None, max_length=255)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("starts_at", "expires_at")
    @classmethod
    def normalise_to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode="after")
    def expiry_after_start(self):
        if self.starts_at and self.expires_at and self.expires_at <= self.starts_at:
            raise ValueError("expires_at must be after starts_at")
        return self


class PackageProvisionOptions(_ProvisionOptions):
    """Options for provision_package()."""

    billing_cycle_anchor: Optional[datetime] = None
    external_service_id: Optional[str] = Field(
        None,
        max_length=255,
        alias="blesta_service_id",
        description="Billing system service reference",
    )

    @field_validator("billing_cycle_anchor")
    @classmethod
    def anchor_to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class BoostProvisionOptions(_ProvisionOptions):
    """Options for provision_boost()."""

    boost_type: BoostType = Field(BoostType.ADD_LIMIT)
    duration_type: BoostDuration = Field(BoostDuration.PERMANENT)
    limit_value: Optional[int] = Field(None, ge=0)
    external_addon_id: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def duration_needs_expiry(self):
        if self.duration_type == BoostDuration.DURATION and self.expires_at is None:
            raise ValueError("duration boosts require expires_at")
        return self
