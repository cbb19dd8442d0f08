"""Filesystem helpers for klettrack client state."""

import os
from pathlib import Path


def get_klettrack_home() -> Path:
    """Return the klettrack data directory.

    ``KLETTRACK_HOME`` overrides the default of ``~/.klettrack``. The
    directory is created on first use.
    """
    override = os.environ.get("KLETTRACK_HOME")
    home = Path(override).expanduser() if override else Path.home() / ".klettrack"
    home.mkdir(parents=True, exist_ok=True)
    return home


def get_default_db_path() -> Path:
    """Path of the client SQLite database."""
    return get_klettrack_home() / "sync.db"
