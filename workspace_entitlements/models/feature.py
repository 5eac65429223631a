"""
Feature catalog model.

Features are GLOBAL (not workspace-scoped) - they define what can be
granted. A feature is immutable once created except for deactivation;
changing a feature's type under live grants would silently change every
workspace's allowance.
"""

from enum import Enum

from sqlalchemy import Column, String, Text, Integer, Boolean

from workspace_entitlements.models.base import Base, TimestampMixin, generate_uuid

DEFAULT_ROLLING_WINDOW_DAYS = 30


class FeatureType(str, Enum):
    """How a feature's allowance is expressed."""
    LIMIT = "limit"          # Metered, numeric limit per reset window
    BOOLEAN = "boolean"      # On/off, no metering
    UNLIMITED = "unlimited"  # Always unlimited when granted


class ResetType(str, Enum):
    """Window over which usage of a metered feature is counted."""
    NONE = "none"        # All-time usage
    MONTHLY = "monthly"  # Current billing cycle
    ROLLING = "rolling"  # Last rolling_window_days days


class Feature(Base, TimestampMixin):
    """A capability that packages and boosts can grant."""

    __tablename__ = "features"

    # Primary key
    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    # Feature identification
    code = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Dotted machine-readable code (ai.credits, tier.apollo)"
    )
    name = Column(
        String(200),
        nullable=False,
        comment="Human-readable name used in denial reasons"
    )
    description = Column(
        Text,
        nullable=True,
    )
    parent_code = Column(
        String(100),
        nullable=True,
        index=True,
        comment="Pool feature whose limit and usage this feature shares"
    )
    category = Column(
        String(50),
        nullable=True,
        index=True,
        comment="Grouping key for usage summaries"
    )

    # Metering configuration
    type = Column(
        String(20),
        nullable=False,
        default=FeatureType.LIMIT.value,
        comment="limit | boolean | unlimited"
    )
    reset_type = Column(
        String(20),
        nullable=False,
        default=ResetType.NONE.value,
        comment="none | monthly | rolling"
    )
    rolling_window_days = Column(
        Integer,
        nullable=True,
        comment="Window length for rolling reset (defaults to 30)"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="Inactive features resolve as non-existent"
    )
    sort_order = Column(
        Integer,
        nullable=False,
        default=0,
    )

    def __repr__(self) -> str:
        return f"<Feature(code={self.code}, type={self.type}, reset_type={self.reset_type})>"

    @property
    def feature_type(self) -> FeatureType:
        return FeatureType(self.type)

    @property
    def reset(self) -> ResetType:
        return ResetType(self.reset_type or ResetType.NONE.value)

    @property
    def is_metered(self) -> bool:
        """Only limit features have usage counted against them."""
        return self.type == FeatureType.LIMIT.value

    @property
    def pool_code(self) -> str:
        """Code that limits, boosts and usage are tracked under."""
        return self.parent_code or self.code

    @property
    def window_days(self) -> int:
        return self.rolling_window_days or DEFAULT_ROLLING_WINDOW_DAYS

    def deactivate(self) -> None:
        self.is_active = False
