"""Pytest configuration and fixtures for the sync backend."""

import os
import secrets

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("RECORD_STORE", "sqlite")

from app.database import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from app.store import SQLiteRecordStore  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from factories import OWNER_A, OWNER_B  # noqa: E402


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite record store per test."""
    return SQLiteRecordStore(tmp_path / "records.db")


@pytest.fixture
def client(store):
    """Test client wired to the per-test store, without rate limiting."""
    app.dependency_overrides[get_db] = lambda: store
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
        limiter.enabled = True


def _headers(owner_id: str) -> dict:
    from app.auth import create_access_token
    from app.config import get_settings

    token = create_access_token(owner_id, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """Auth headers for the primary test owner."""
    return _headers(OWNER_A)


@pytest.fixture
def other_auth_headers():
    """Auth headers for a second, unrelated owner."""
    return _headers(OWNER_B)
