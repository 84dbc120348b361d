"""Pytest configuration and shared fixtures."""

import pytest

from config_refresh.common.config import ConfigEntry, StartupPolicy
from config_refresh.services.refresh.coordinator import RefreshCoordinator
from config_refresh.services.refresh.source import InMemoryRemoteSource
from config_refresh.services.refresh.store import SnapshotStore

SENTINEL_KEY = "Settings:Sentinel"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return InMemoryRemoteSource([
        ConfigEntry(key=SENTINEL_KEY, value="v1"),
        ConfigEntry(key="Foo", value="old"),
        ConfigEntry(key="Bar", value="base-bar"),
    ])


@pytest.fixture
def store():
    return SnapshotStore()


@pytest.fixture
def make_coordinator(source, store, clock):
    """Build a coordinator over the shared source/store/clock."""

    def _make(**overrides) -> RefreshCoordinator:
        params = {
            "source": source,
            "store": store,
            "sentinel_key": SENTINEL_KEY,
            "tick_interval_s": 30.0,
            "cache_expiration_s": 30.0,
            "startup_policy": StartupPolicy.FAIL,
            "clock": clock,
        }
        params.update(overrides)
        return RefreshCoordinator(**params)

    return _make
