"""
Pytest fixtures and test configuration for klettrack client tests.
"""

import os
import secrets

import pytest

# The end-to-end tests drive the real backend app; it reads settings at import
os.environ.setdefault("JWT_SECRET_KEY", f"test-only-{secrets.token_urlsafe(32)}")
os.environ.setdefault("RECORD_STORE", "sqlite")

from klettrack.storage import SQLiteStorage  # noqa: E402


@pytest.fixture(autouse=True)
def klettrack_home(tmp_path, monkeypatch):
    """Keep every test's client files inside its own temp directory."""
    home = tmp_path / "klettrack-home"
    home.mkdir()
    monkeypatch.setenv("KLETTRACK_HOME", str(home))
    for var in ("KLETTRACK_BACKEND_URL", "KLETTRACK_AUTH_TOKEN", "KLETTRACK_USER_ID"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def storage(tmp_path):
    """Client SQLite storage in a temp file."""
    return SQLiteStorage(tmp_path / "client.db")


@pytest.fixture
def storage_factory(tmp_path):
    """Build separate client databases, e.g. one per simulated device."""

    def _make(name: str) -> SQLiteStorage:
        return SQLiteStorage(tmp_path / f"{name}.db")

    return _make
