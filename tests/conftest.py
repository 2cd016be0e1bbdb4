"""
Shared fixtures for the test suite.
"""

from datetime import datetime, timedelta, timezone

import pytest

from usage_governor.storage.memory import InMemoryStore
from usage_governor.storage.repository import SQLiteStore, initialize_schema

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_store(tmp_path):
    db_path = str(tmp_path / "governor.db")
    initialize_schema(db_path)
    return SQLiteStore(db_path)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each governance test runs against both store implementations."""
    if request.param == "memory":
        return InMemoryStore()
    db_path = str(tmp_path / "governor.db")
    initialize_schema(db_path)
    return SQLiteStore(db_path)
