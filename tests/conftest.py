"""Shared test fixtures and configuration.

Sets up fake environment variables before any src imports, and provides
common fixtures like a temp DB and alarm builders.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_alarms.db")


@pytest.fixture
def alarm_db(tmp_db_path):
    """Return an AlarmDB instance backed by a temp file."""
    from src.data.db import AlarmDB
    return AlarmDB(db_path=tmp_db_path)
