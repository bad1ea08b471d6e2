"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database built from the ORM metadata.
Each test gets a fresh schema: tables are dropped and recreated on teardown,
so nothing created during one test is visible to the next.
"""
import os
import sys
from datetime import datetime, timezone

# Settings are read at import time; configure them before anything imports core.*
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-jwt-signing-0123456789abcdef")
os.environ["LOG_FORMAT"] = "text"
os.environ["LOG_LEVEL"] = "WARNING"
for _key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "STRIPE_PRICE_PREMIUM_MONTHLY_ID", "SENTRY_DSN"):
    os.environ.pop(_key, None)

# Add the repo root to the path so we can import core, routers, services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from fastapi.testclient import TestClient

from core.database import Base, SessionLocal, engine, get_db
from core.security import create_access_token
from main import app
from models import User


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Session shared by the test body and every request made through ``client``.

    The schema is rebuilt afterwards; no cleanup needed in tests.
    """
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def make_user(db_session):
    """Factory: make_user("u1", name="Alice", role="coach", ...)."""
    def _make(user_id=None, *, name="Test User", role="user", email=None, **fields):
        user = User(
            name=name,
            role=role,
            email=email,
            subscription_tier=fields.pop("subscription_tier", "free"),
            **fields,
        )
        if user_id:
            user.id = user_id
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


def auth_headers(user: User) -> dict:
    token = create_access_token({"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return auth_headers


@pytest.fixture
def base_time():
    """Fixed reference instant; tests add offsets to control ordering."""
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
