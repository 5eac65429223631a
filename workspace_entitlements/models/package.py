"""
Package and PackageFeature models.

Packages are GLOBAL (not workspace-scoped) - they bundle feature grants.
A workspace holds at most one active base package plus any number of
add-on packages.
"""

from sqlalchemy import (
    Column, String, Text, Integer, Boolean,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from workspace_entitlements.models.base import Base, TimestampMixin, generate_uuid


class Package(Base, TimestampMixin):
    """A named bundle of feature grants."""

    __tablename__ = "packages"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    code = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Machine-readable code (creator, agency, social-addon)"
    )
    name = Column(
        String(200),
        nullable=False,
    )
    description = Column(
        Text,
        nullable=True,
    )

    is_base_package = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="At most one active base package per workspace"
    )
    is_stackable = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Add-on may be held alongside other packages"
    )
    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="Whether package can be provisioned"
    )
    sort_order = Column(
        Integer,
        nullable=False,
        default=0,
    )

    # Relationships
    features = relationship(
        "PackageFeature",
        back_populates="package",
        lazy="selectin",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Package(code={self.code}, base={self.is_base_package})>"


class PackageFeature(Base, TimestampMixin):
    """
    Feature grant within a package.

    limit_value semantics depend on the feature type:
    - limit: numeric allowance per reset window (NULL = unlimited)
    - boolean / unlimited: ignored, the row's presence is the grant
    """

    __tablename__ = "package_features"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    package_id = Column(
        String(36),
        ForeignKey("packages.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    feature_id = Column(
        String(36),
        ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    limit_value = Column(
        Integer,
        nullable=True,
        comment="Numerical limit for metered features (NULL = unlimited)"
    )

    # Relationships
    package = relationship("Package", back_populates="features")
    feature = relationship("Feature", lazy="joined", innerjoin=True)

    __table_args__ = (
        UniqueConstraint("package_id", "feature_id", name="uq_package_feature"),
        Index("ix_package_features_package_feature", "package_id", "feature_id"),
    )

    def __repr__(self) -> str:
        return f"<PackageFeature(package_id={self.package_id}, feature_id={self.feature_id}, limit={self.limit_value})>"
