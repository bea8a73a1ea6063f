"""
Shared test configuration and fixtures.

Provides a controllable clock, a recording table view, and the in-memory
remote store and snapshot wired into a SyncAdapter with short timers.
"""

from __future__ import annotations

import pytest

from dashboard_sync.cache import QueryCache
from dashboard_sync.config import SyncConfig
from dashboard_sync.stores import MemoryRemoteStore, MemorySnapshot
from dashboard_sync.sync import SyncAdapter
from dashboard_sync.types import Notification, Record

DEBOUNCE_DELAY = 0.05


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingView:
    """TableView that records every hook the adapter calls."""

    def __init__(self, table_id: str = "tableBody", records: list[Record] | None = None):
        self.table_id = table_id
        self.records: list[Record] = list(records or [])
        self.calls: list[str] = []

    def replace_records(self, records: list[Record]) -> None:
        self.records = list(records)
        self.calls.append("replace_records")

    def recompute(self) -> None:
        self.calls.append("recompute")

    def render(self) -> None:
        self.calls.append("render")

    def refresh_summary(self) -> None:
        self.calls.append("refresh_summary")


def make_record(name: str, score: int = 0) -> Record:
    return Record(key=name, payload={"name": name, "score": score})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> MemoryRemoteStore:
    return MemoryRemoteStore()


@pytest.fixture
def snapshot() -> MemorySnapshot:
    return MemorySnapshot()


@pytest.fixture
def view() -> RecordingView:
    return RecordingView(records=[make_record("Alice", 90), make_record("Bob", 75)])


@pytest.fixture
def notifications() -> list[Notification]:
    return []


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(suppression_window=2.0, debounce_delay=DEBOUNCE_DELAY)


@pytest.fixture
async def adapter(view, remote, snapshot, sync_config, clock, notifications):
    """Adapter without a cache, using the fake clock for suppression."""
    adapter = SyncAdapter(
        view,
        remote,
        snapshot,
        config=sync_config,
        notify=notifications.append,
        clock=clock,
    )
    yield adapter
    await adapter.close()


@pytest.fixture
async def cached_adapter(view, remote, snapshot, sync_config, clock):
    """Adapter reading through a QueryCache."""
    cache = QueryCache(default_ttl=300.0, clock=clock)
    adapter = SyncAdapter(
        view,
        remote,
        snapshot,
        cache=cache,
        config=sync_config,
        read_ttl=120.0,
        clock=clock,
    )
    yield adapter
    await adapter.close()
