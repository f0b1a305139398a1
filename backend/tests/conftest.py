"""
Pytest configuration and shared fixtures for BusWhere+ backend tests.
"""
import random
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from buswhere.config import Settings
from buswhere.main import create_app
from buswhere.services.fixture_store import FixtureStore
from buswhere.services.scheduler import VirtualScheduler

FIXED_NOW = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


class MemoryStorage:
    """Dict-backed stand-in for RedisService session storage."""

    def __init__(self):
        self.data = {}

    def get_data(self, key):
        return self.data.get(key)

    def set_data(self, key, data, expiry=None):
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="json")
        self.data[key] = data
        return True

    def delete_data(self, key):
        return self.data.pop(key, None) is not None

    def close(self):
        pass


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def store() -> FixtureStore:
    """Seeded store stamped with the current time."""
    return FixtureStore.seeded()


@pytest.fixture
def fixed_store() -> FixtureStore:
    """Seeded store stamped with FIXED_NOW, for time-dependent assertions."""
    return FixtureStore.seeded(now=FIXED_NOW)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def settings() -> Settings:
    return Settings(redis_enabled=False, live_locations_cache_ttl=0)


@pytest.fixture
def client(settings, store, scheduler):
    """Test client for an app running the mock backend on virtual time."""
    app = create_app(settings, store=store, scheduler=scheduler)
    with TestClient(app) as test_client:
        yield test_client
