"""
Pytest configuration and fixtures.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tests.test_constants import TEST_INTERNAL_JOB_TOKEN, TEST_SECRET_KEY

# Force an in-memory DB when pytest runs; don't inherit from .env
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", TEST_SECRET_KEY)
os.environ.setdefault("INTERNAL_JOB_TOKEN", TEST_INTERNAL_JOB_TOKEN)
os.environ.pop("PAGESPEED_API_KEY", None)

from tests.fakes import FakeAuditClient  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine with the full schema, one per test.

    A file (not :memory:) gives every session its own connection, as with
    PostgreSQL, so concurrent claims really race.
    """
    from perfpulse.db.session import Base
    import perfpulse.models  # noqa: F401  (register tables)

    eng = create_engine(
        f"sqlite:///{tmp_path / 'perfpulse.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_audit() -> FakeAuditClient:
    """Audit client that succeeds with the sample payload unless told otherwise."""
    return FakeAuditClient()


@pytest.fixture
def orchestrator(fake_audit: FakeAuditClient):
    """Orchestrator with no retry backoff so re-queued jobs are claimable at once."""
    from perfpulse.services.orchestrator import TestOrchestrator

    return TestOrchestrator(fake_audit, max_attempts=3, retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    from perfpulse.main import app

    return TestClient(app)


@pytest.fixture
def client_with_db(session_factory, orchestrator) -> Iterator[TestClient]:
    """TestClient with get_db and get_orchestrator bound to the per-test database."""
    from perfpulse.api.deps import get_orchestrator
    from perfpulse.db.session import get_db
    from perfpulse.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    c = TestClient(app)
    yield c
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_orchestrator, None)


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    """Drop cached settings so env changes in one test don't leak into the next."""
    from perfpulse.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
