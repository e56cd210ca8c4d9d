"""
Pytest configuration and shared fixtures for usage analytics tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from datetime import datetime, timedelta
from typing import Generator, AsyncGenerator

from usage_analytics.storage.adapters import InMemoryAdapter, SQLiteAdapter
from usage_analytics.storage.cache import InMemoryCacheStore
from usage_analytics.storage.database import Database
from usage_analytics.utils.metrics import MetricsCollector
from usage_analytics.utils.notifications import EventBus

from tests.fixtures.event_fixtures import EventFixtures, FIXED_NOW, PROJECT_ID


class MutableClock:
    """Clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def cache() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def storage() -> InMemoryAdapter:
    return InMemoryAdapter()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events() -> EventFixtures:
    return EventFixtures()


@pytest.fixture
async def project_storage(storage: InMemoryAdapter) -> InMemoryAdapter:
    """In-memory storage with the default project registered."""
    await storage.register_project(PROJECT_ID)
    return storage


@pytest.fixture
async def sqlite_storage(temp_dir: Path) -> AsyncGenerator[SQLiteAdapter, None]:
    """Create a test SQLite adapter."""
    adapter = SQLiteAdapter(Database(temp_dir / "analytics.db"))
    await adapter.initialize()
    yield adapter
    await adapter.close()
