import os

# Settings are read at import time, so the environment comes first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from fastapi_limiter import FastAPILimiter
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_booking.clients import IdentityService, ListingStore
from rental_booking.database import Base, get_db
from rental_booking.dependencies import get_identity_service, get_listing_store
from rental_booking.main import app
from rental_booking.routers import booking_router

from helpers import StaticListingStore, catalog_handler, create_test_token, identity_handler

# --- Database Management Fixtures ---

@pytest.fixture(scope="function")
def engine():
    """A fresh in-memory database per test."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


# --- Collaborators ---

@pytest.fixture
def listing_store():
    return StaticListingStore()


@pytest.fixture
def catalog_client():
    return ListingStore(base_url="http://catalog", client=httpx.Client(transport=httpx.MockTransport(catalog_handler)))


@pytest.fixture
def profile_cache():
    cache = MagicMock()
    cache.get.return_value = None
    return cache


@pytest.fixture
def identity_client(profile_cache):
    return IdentityService(
        base_url="http://identity",
        client=httpx.Client(transport=httpx.MockTransport(identity_handler)),
        redis_client=profile_cache,
    )


# --- Mocking Background Work ---

@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Keeps the lifespan from starting the poller and scheduler or talking to Redis.
    """
    mocker.patch("rental_booking.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("rental_booking.main.run_booking_scheduler", new_callable=AsyncMock)
    mocker.patch.object(FastAPILimiter, "init", new_callable=AsyncMock)


# --- API Test Client Fixture ---

@pytest.fixture(scope="function")
def client(db_session, catalog_client, identity_client):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_listing_store] = lambda: catalog_client
    app.dependency_overrides[get_identity_service] = lambda: identity_client
    app.dependency_overrides[booking_router.write_limiter] = lambda: None
    app.dependency_overrides[booking_router.read_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Authorization headers for renter 1."""
    return {"Authorization": create_test_token(1)}


@pytest.fixture
def other_renter_headers():
    return {"Authorization": create_test_token(2)}


@pytest.fixture
def admin_headers():
    return {"Authorization": create_test_token(99, role="admin")}
