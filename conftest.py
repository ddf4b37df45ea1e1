"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path. Settings are reloaded
from the test environment before the app builds anything.
"""

import logging
import os
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./relay-test.db")
os.environ.setdefault("BUSINESS_NUMBER", "biz")

# Clear settings cache before any app imports to ensure test env vars are used
from relay.config import get_settings
get_settings.cache_clear()

from relay.main import app
from relay.service import RelayService
from relay.storage import create_store


BUSINESS_NUMBER = "biz"


class TickingClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging() replaces root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def store(tmp_path, clock):
    """Fresh store with schema and change-log triggers applied."""
    message_store = create_store(f"sqlite:///{tmp_path / 'relay.db'}", clock=clock)
    message_store.init_schema()
    yield message_store
    message_store.dispose()


@pytest.fixture
def service(store) -> RelayService:
    return RelayService(store, business_number=BUSINESS_NUMBER)


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Create test client with fresh database for each test."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setenv("BUSINESS_NUMBER", BUSINESS_NUMBER)
    monkeypatch.setenv("FEED_POLL_INTERVAL_SECONDS", "0.02")
    get_settings.cache_clear()

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()
