"""
Pytest configuration and shared test helpers for backend tests.
No live MongoDB, OpenAI or Stripe is needed: the database handle and SDK
clients are patched per test.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

from server import app
from auth import create_user_token
from flowforge.models.user import UserProfile
from flowforge.services.usage_service import usage_service
from flowforge.services.analytics_service import analytics_service
from flowforge.services.stripe_service import stripe_service
from flowforge.services.auth_service import auth_service
from utils.rate_limiter import rate_limiter


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app)."""
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Services cache their db handle; drop it so each test sees its own mock."""
    for service in (usage_service, analytics_service, stripe_service, auth_service):
        service.db = None
    rate_limiter.reset()
    yield
    for service in (usage_service, analytics_service, stripe_service, auth_service):
        service.db = None
    rate_limiter.reset()


def make_user(**overrides) -> dict:
    """Stored user document (as read back with password_hash excluded)."""
    user = UserProfile(
        email=overrides.pop("email", "maker@example.com"),
        display_name="Maker",
        password_hash="x",
    ).model_dump(mode="json")
    user.pop("password_hash")
    user.update(overrides)
    return user


def auth_headers(user: dict) -> dict:
    token = create_user_token(user)
    return {"Authorization": f"Bearer {token}"}


def make_db(user: dict = None) -> MagicMock:
    """MagicMock database whose collections accept the writes the routes make."""
    db = MagicMock()
    db.users.find_one = AsyncMock(return_value=user)
    db.users.update_one = AsyncMock(return_value=MagicMock(matched_count=1, modified_count=1))
    db.users.insert_one = AsyncMock()
    db.workflows.insert_one = AsyncMock()
    db.usage_analytics.insert_one = AsyncMock()
    db.analytics_events.insert_one = AsyncMock()
    db.business_metrics.insert_one = AsyncMock()
    db.conversion_opportunities.insert_one = AsyncMock()
    db.conversion_opportunities.update_many = AsyncMock(return_value=MagicMock(modified_count=0))
    db.stripe_events.update_one = AsyncMock()
    return db


@pytest.fixture
def patched_db():
    """Factory: patch database.get_db to return a mock built around `user`."""
    patches = []

    def _patch(user: dict = None) -> MagicMock:
        db = make_db(user)
        p = patch("database.database.get_db", return_value=db)
        p.start()
        patches.append(p)
        return db

    yield _patch
    for p in patches:
        p.stop()
