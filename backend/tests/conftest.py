"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
os.environ.pop("POSTMARK_SERVER_TOKEN", None)

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from fakes import FakeDatabase


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def fake_db(monkeypatch):
    """Route database.get_db() and database.transaction() to an in-memory FakeDatabase."""
    from database import database

    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(database, "get_db", lambda: db)
    monkeypatch.setattr(database, "transaction", db.transaction)
    return db


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    from utils.rate_limiter import rate_limiter

    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    yield
    app.dependency_overrides.clear()
