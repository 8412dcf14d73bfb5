from datetime import timedelta

import pytest

from livetrack.models import WatchState
from livetrack.settlement import SessionSettler
from livetrack.store import SqliteCounterStore, StoreError


def _state(clock, heartbeats: int) -> WatchState:
    return WatchState(
        channel_id="c1",
        channel_name="News",
        channel_group="News & Weather",
        channel_logo="logo.png",
        source_key="s1",
        source_name="Source One",
        start_time=clock.now - timedelta(seconds=30 * heartbeats),
        last_heartbeat=clock.now,
        heartbeat_count=heartbeats,
    )


@pytest.mark.asyncio
async def test_duration_counts_heartbeats(settler, clock):
    assert settler.duration_of(_state(clock, 1)) == 30
    assert settler.duration_of(_state(clock, 7)) == 210


@pytest.mark.asyncio
async def test_build_session_copies_identity(settler, clock):
    state = _state(clock, 3)
    end_time = clock.now + timedelta(seconds=5)
    session = settler.build_session(state, end_time)

    assert session.channel_logo == "logo.png"
    assert session.source_name == "Source One"
    assert session.start_time == state.start_time
    assert session.end_time == end_time
    assert session.duration == 90
    assert session.heartbeat_count == 3


@pytest.mark.asyncio
async def test_build_session_bounds_are_inclusive(store, clock):
    settler = SessionSettler(store, heartbeat_interval=30, min_duration=60, max_duration=120)

    assert settler.build_session(_state(clock, 1), clock.now) is None
    assert settler.build_session(_state(clock, 2), clock.now).duration == 60
    assert settler.build_session(_state(clock, 4), clock.now).duration == 120
    assert settler.build_session(_state(clock, 5), clock.now) is None


@pytest.mark.asyncio
async def test_default_bounds(store):
    settler = SessionSettler(store)
    assert settler.min_duration == settler.heartbeat_interval == 30
    assert settler.max_duration == 8 * 60 * 60
    assert settler.history_limit == 100
    assert settler.daily_ttl == 7 * 24 * 60 * 60


@pytest.mark.asyncio
async def test_settle_records_session(settler, store, clock):
    session = await settler.settle("alice", _state(clock, 4), clock.now)

    assert session.duration == 120
    history = await store.get("live:sessions:alice")
    assert history[0]["channelGroup"] == "News & Weather"
    assert history[0]["endTime"] == session.to_store()["endTime"]


@pytest.mark.asyncio
async def test_settle_discards_out_of_range(settler, store, clock):
    assert await settler.settle("alice", _state(clock, 8 * 60 * 2 + 1), clock.now) is None
    assert await store.get("live:stats:alice") is None


class _FailingChannelStore(SqliteCounterStore):
    async def update(self, key, apply, ttl=None):
        if key.startswith("live:channel:"):
            raise StoreError("locked")
        return await super().update(key, apply, ttl)


@pytest.mark.asyncio
async def test_settle_swallows_partial_failure(tmp_path, clock):
    store = _FailingChannelStore(tmp_path / "partial.db", clock=clock)
    await store.connect()
    try:
        settler = SessionSettler(store, heartbeat_interval=30)
        assert await settler.settle("alice", _state(clock, 2), clock.now) is None

        # views written before the failure keep their update
        assert len(await store.get("live:sessions:alice")) == 1
        assert (await store.get("live:stats:alice"))["totalSessions"] == 1
        assert await store.get("live:channel:c1") is None
    finally:
        await store.close()
