"""Aggregate views folded from settled watch sessions.

Each view lives under its own key and is updated with a single atomic
read-modify-write. The four views of one settlement are applied in order but
not as a group; a failure part way leaves the earlier views updated.
"""

from typing import Any, Optional

from . import keys
from .models import ChannelStats, DailyStats, UserStats, WatchSession
from .store import CounterStore


async def prepend_session(
    store: CounterStore, username: str, session: WatchSession, limit: int
) -> list[Any]:
    """Put ``session`` at the front of the user's history, keeping ``limit`` entries."""

    def apply(current: Optional[list[Any]]) -> list[Any]:
        history = [session.to_store()] + (current or [])
        return history[:limit]

    return await store.update(keys.sessions(username), apply)


async def add_to_user_stats(
    store: CounterStore, username: str, session: WatchSession
) -> UserStats:
    def apply(current: Optional[dict]) -> dict:
        stats = UserStats.model_validate(current) if current else UserStats()
        stats.total_watch_time += session.duration
        stats.total_sessions += 1
        stats.last_watch_time = session.end_time
        return stats.to_store()

    return UserStats.model_validate(await store.update(keys.user_stats(username), apply))


async def add_to_daily_stats(
    store: CounterStore, username: str, session: WatchSession, ttl: int
) -> DailyStats:
    """Fold ``session`` into the stats of the UTC day it ended on and refresh the TTL."""

    def apply(current: Optional[dict]) -> dict:
        stats = DailyStats.model_validate(current) if current else DailyStats()
        stats.watch_time += session.duration
        stats.sessions += 1
        stats.users.add(username)
        return stats.to_store()

    day = keys.day_of(session.end_time)
    return DailyStats.model_validate(await store.update(keys.daily(day), apply, ttl=ttl))


async def add_to_channel_stats(
    store: CounterStore, username: str, session: WatchSession
) -> ChannelStats:
    def apply(current: Optional[dict]) -> dict:
        if current:
            stats = ChannelStats.model_validate(current)
        else:
            stats = ChannelStats(
                channel_id=session.channel_id,
                channel_name=session.channel_name,
                channel_group=session.channel_group,
            )
        stats.total_watch_time += session.duration
        stats.total_sessions += 1
        stats.users.add(username)
        return stats.to_store()

    return ChannelStats.model_validate(
        await store.update(keys.channel(session.channel_id), apply)
    )


async def apply_session(
    store: CounterStore,
    username: str,
    session: WatchSession,
    *,
    history_limit: int,
    daily_ttl: int,
) -> None:
    """Apply one settled session to all four aggregate views."""
    await prepend_session(store, username, session, history_limit)
    await add_to_user_stats(store, username, session)
    await add_to_daily_stats(store, username, session, daily_ttl)
    await add_to_channel_stats(store, username, session)
