"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: SQLite in-memory store (PostgreSQL when
  DATABASE_URL is set), emptied after every test
- clock: controllable UTC clock injected into services
- catalog helpers: make_feature, make_package, seed_catalog
- make_yaml_config: factory for writing catalog files to a temp dir
"""

import fnmatch
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
import yaml
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")
os.environ.pop("REDIS_URL", None)

import workspace_entitlements.models  # noqa: E402,F401 - registers tables on Base
from workspace_entitlements.db_base import Base  # noqa: E402
from workspace_entitlements.entitlements.audit import EntitlementAuditLogger  # noqa: E402
from workspace_entitlements.entitlements.cache import EntitlementCache  # noqa: E402
from workspace_entitlements.entitlements.service import EntitlementService  # noqa: E402
from workspace_entitlements.models import Feature, Package, PackageFeature  # noqa: E402

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Database session for one test.

    Services commit their own units of work, so isolation comes from
    emptying every table afterwards rather than an outer rollback.
    """
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


# =============================================================================
# Clock
# =============================================================================


class MutableClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def clock():
    return MutableClock()


# =============================================================================
# Cache / service
# =============================================================================


@pytest.fixture
def offline_redis():
    """RedisClient stand-in that reports Redis as unavailable."""
    client = MagicMock()
    client.available = False
    return client


class SharedRedisStub:
    """Dict-backed RedisClient stand-in shared between cache instances."""

    available = True

    def __init__(self):
        self.store = {}
        self.published = []

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl_seconds):
        self.store[key] = value
        return True

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def delete_pattern(self, pattern):
        return self.delete(*[key for key in list(self.store) if fnmatch.fnmatch(key, pattern)])

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 0


@pytest.fixture
def shared_redis():
    """One Redis stand-in for caches that model separate processes."""
    return SharedRedisStub()


@pytest.fixture
def entitlement_cache(offline_redis):
    """Enabled in-memory cache isolated from the process singleton."""
    return EntitlementCache(redis_client=offline_redis, ttl_seconds=60, enabled=True)


@pytest.fixture
def disabled_cache(offline_redis):
    return EntitlementCache(redis_client=offline_redis, enabled=False)


@pytest.fixture
def service(db_session, disabled_cache, clock):
    """EntitlementService reading straight from the store (no caching)."""
    return EntitlementService(
        db_session,
        cache=disabled_cache,
        audit_logger=EntitlementAuditLogger(),
        clock=clock,
    )


@pytest.fixture
def cached_service(db_session, entitlement_cache, clock):
    return EntitlementService(
        db_session,
        cache=entitlement_cache,
        audit_logger=EntitlementAuditLogger(),
        clock=clock,
    )


# =============================================================================
# Catalog helpers
# =============================================================================


@pytest.fixture
def make_feature(db_session):
    """Factory: create and commit a Feature."""
    def _make(code: str, type: str = "limit", reset_type: str = "none", **kwargs) -> Feature:
        feature = Feature(
            code=code,
            name=kwargs.pop("name", code.replace(".", " ").title()),
            type=type,
            reset_type=reset_type,
            **kwargs,
        )
        db_session.add(feature)
        db_session.commit()
        return feature
    return _make


@pytest.fixture
def make_package(db_session):
    """Factory: create and commit a Package with {feature: limit} grants."""
    def _make(code: str, grants: dict = None, base: bool = False, **kwargs) -> Package:
        package = Package(
            code=code,
            name=kwargs.pop("name", code.title()),
            is_base_package=base,
            **kwargs,
        )
        for feature, limit in (grants or {}).items():
            package.features.append(PackageFeature(feature=feature, limit_value=limit))
        db_session.add(package)
        db_session.commit()
        return package
    return _make


@pytest.fixture
def seed_catalog(make_feature, make_package):
    """
    Small catalog covering every feature shape.

    Features: ai.credits (limit, monthly, pool of ai.images), ai.images,
    social.accounts (limit, none), social.posts (limit, rolling 30 days),
    tier.apollo (boolean), workspace.members (unlimited).
    Packages: creator (base), agency (base), ai-addon (add-on).
    """
    ai_credits = make_feature("ai.credits", reset_type="monthly", name="AI Credits", category="ai")
    ai_images = make_feature(
        "ai.images", reset_type="monthly", name="AI Images", category="ai", parent_code="ai.credits"
    )
    social_accounts = make_feature("social.accounts", name="Social Accounts", category="social")
    social_posts = make_feature(
        "social.posts", reset_type="rolling", rolling_window_days=30, name="Scheduled Posts", category="social"
    )
    apollo = make_feature("tier.apollo", type="boolean", name="Apollo Tier", category="tier")
    members = make_feature("workspace.members", type="unlimited", name="Team Members", category="workspace")

    creator = make_package(
        "creator",
        {ai_credits: 100, social_accounts: 5, social_posts: 10, apollo: None},
        base=True,
    )
    agency = make_package(
        "agency",
        {ai_credits: 1000, social_accounts: 50, social_posts: None, apollo: None, members: None},
        base=True,
    )
    addon = make_package("ai-addon", {ai_credits: 500})

    return {
        "features": {
            f.code: f for f in (ai_credits, ai_images, social_accounts, social_posts, apollo, members)
        },
        "packages": {p.code: p for p in (creator, agency, addon)},
    }


# =============================================================================
# Config fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("catalog.yml", {"features": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
