"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["AD_PLATFORM_PROVIDER"] = "stub"
os.environ["ENCRYPTION_MASTER_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["NETWORK_RETRY_BASE_SECONDS"] = "0"

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from campaign_engine.adapters.ad_platform.stub import StubAdPlatformClient  # noqa: E402
from campaign_engine.db.models import Base  # noqa: E402
from campaign_engine.db.session import (  # noqa: E402
    SessionFactory,
    engine_options,
    session_scope_factory,
)
from campaign_engine.services.engine import Engine, build_engine  # noqa: E402

OWNER = "user_1"
ACCOUNT = "act_100"


class FakeClock:
    """Settable clock handed to services in place of ``utc_now``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def session_factory() -> Generator[SessionFactory, None, None]:
    """Transactional scope over a fresh in-memory database."""
    db = create_engine("sqlite://", **engine_options("sqlite://"))
    Base.metadata.create_all(db)
    factory = sessionmaker(bind=db, autocommit=False, autoflush=False)
    yield session_scope_factory(factory)
    db.dispose()


@pytest.fixture
def file_session_factory(tmp_path) -> Generator[SessionFactory, None, None]:
    """Scope over a file database, for tests that share it between threads."""
    url = f"sqlite:///{tmp_path / 'engine.db'}"
    db = create_engine(url, **engine_options(url))
    Base.metadata.create_all(db)
    factory = sessionmaker(bind=db, autocommit=False, autoflush=False)
    yield session_scope_factory(factory)
    db.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client() -> StubAdPlatformClient:
    """Get a stub ad platform client."""
    return StubAdPlatformClient()


@pytest.fixture
def engine(session_factory, clock, client) -> Engine:
    """Fully wired engine on the test database, stub client and fake clock."""
    return build_engine(session_factory, clock, client)


@pytest.fixture
def credential_id(engine: Engine) -> int:
    """One pooled credential in the default group."""
    return engine.pool.add_credential("primary", "token-primary")


def child_specs(count: int, with_ads: bool = True) -> list[dict]:
    """Child specs for ``count`` ad sets, each with an ad unless disabled."""
    specs = []
    for number in range(1, count + 1):
        spec: dict = {"adset": {"name": f"Ad Set {number}", "daily_budget": 1000}}
        if with_ads:
            spec["ad"] = {"name": f"Ad {number}", "creative": {"creative_id": "cr_1"}}
        specs.append(spec)
    return specs


@pytest.fixture
def test_client(engine: Engine) -> Generator[TestClient, None, None]:
    """Test client for the FastAPI app, served by the test engine."""
    from campaign_engine.api.deps import get_engine
    from campaign_engine.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()
