"""Pytest configuration for homeqr integration tests

WHAT: Provides shared fixtures for HTTP endpoint and service-level tests
WHY: Ensures consistent test setup, database isolation, and frozen settings
REFERENCES:
    - homeqr/main.py: FastAPI application
    - homeqr/database.py: Database configuration
    - homeqr/deps.py: Settings dependency
"""

import os
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["SENTRY_DSN"] = ""

SITE_URL = "https://homeqr.test"
ADMIN_SECRET = "test-admin-secret"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine.

    StaticPool keeps one connection so the TestClient thread sees the same
    in-memory database as the test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from homeqr.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    """Frozen settings independent of the developer's .env."""
    from homeqr.deps import Settings

    return Settings(
        _env_file=None,
        SITE_URL=SITE_URL,
        BACKEND_CORS_ORIGINS=SITE_URL,
        SESSION_COOKIE_NAME="homeqr_session",
        SESSION_COOKIE_SECURE=False,
        ANALYTICS_TIMEZONE="UTC",
        QR_SESSION_FALLBACK_SECONDS=300,
        ADMIN_SECRET=ADMIN_SECRET,
        ADMIN_SESSION_SECRET="test-admin-session-secret",
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, test_settings):
    """Create FastAPI test application."""
    from homeqr.main import create_app
    from homeqr.database import get_db
    from homeqr.deps import get_settings

    test_app = create_app()

    # Shared with the test body; closed by the test_db_session fixture
    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: test_settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing (redirects are asserted, not followed)."""
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": ADMIN_SECRET}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_listing(test_db_session):
    """Create test listing with a pretty slug."""
    from homeqr.models import Listing

    listing = Listing(
        id=uuid.uuid4(),
        slug="12-oak-street",
        address="12 Oak Street",
        created_at=datetime(2026, 1, 1, 9, 0),
    )

    test_db_session.add(listing)
    test_db_session.commit()
    test_db_session.refresh(listing)

    return listing


@pytest.fixture
def test_listing_without_slug(test_db_session):
    from homeqr.models import Listing

    listing = Listing(id=uuid.uuid4(), address="7 Elm Road")

    test_db_session.add(listing)
    test_db_session.commit()
    test_db_session.refresh(listing)

    return listing


@pytest.fixture
def test_qr_code(test_db_session, test_listing):
    """Create QR code record for the test listing (legacy route)."""
    from homeqr.models import QRCode

    qr_code = QRCode(
        id=uuid.uuid4(),
        listing_id=test_listing.id,
        scan_count=0,
        redirect_url="/12-oak-street?source=qr",
    )

    test_db_session.add(qr_code)
    test_db_session.commit()
    test_db_session.refresh(qr_code)

    return qr_code
