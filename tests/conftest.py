from datetime import datetime, timedelta, timezone

import pytest_asyncio

from livetrack.settlement import SessionSettler
from livetrack.store import SqliteCounterStore
from livetrack.tracker import WatchTracker


class FakeClock:
    """Store clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest_asyncio.fixture
async def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    counter_store = SqliteCounterStore(tmp_path / "test.db", clock=clock)
    await counter_store.connect()
    try:
        yield counter_store
    finally:
        await counter_store.close()


@pytest_asyncio.fixture
async def settler(store):
    return SessionSettler(
        store,
        heartbeat_interval=30,
        min_duration=30,
        max_duration=8 * 60 * 60,
        history_limit=100,
        daily_ttl=7 * 24 * 60 * 60,
    )


@pytest_asyncio.fixture
async def tracker(store, settler):
    return WatchTracker(store, settler, state_ttl=60)
