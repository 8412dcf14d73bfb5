import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydantic import ValidationError

from . import keys
from .config import settings
from .models import (
    DailyStats,
    DailyTrendPoint,
    FavoriteChannel,
    GlobalStats,
    HotChannel,
    UserReport,
    UserStats,
    WatchSession,
)
from .store import CounterStore, StoreError, store
from .tracker import utcnow

logger = logging.getLogger(__name__)

FAVORITE_CHANNELS = 5
HOT_CHANNELS = 10
RECENT_SESSIONS = 10
TREND_DAYS = 7


class _ChannelTotals:
    """Running totals for one channel while scanning sessions."""

    def __init__(self, session: WatchSession):
        self.channel_id = session.channel_id
        self.channel_name = session.channel_name
        self.channel_group = session.channel_group
        self.watch_time = 0
        self.sessions = 0
        self.users: set[str] = set()

    def add(self, session: WatchSession, username: str) -> None:
        self.watch_time += session.duration
        self.sessions += 1
        self.users.add(username)


def _fold(totals: dict[str, _ChannelTotals], session: WatchSession, username: str) -> None:
    entry = totals.get(session.channel_id)
    if entry is None:
        entry = totals[session.channel_id] = _ChannelTotals(session)
    entry.add(session, username)


def _ranked(totals: dict[str, _ChannelTotals], limit: int) -> list[_ChannelTotals]:
    # sorted() is stable, ties keep first-seen order
    return sorted(totals.values(), key=lambda c: c.watch_time, reverse=True)[:limit]


class StatsReporter:
    """Builds the site-wide live watching report from the aggregate views."""

    def __init__(self, store: CounterStore, cache_ttl: Optional[int] = None):
        self.store = store
        self.cache_ttl = cache_ttl or settings.stats_cache_ttl_seconds

    async def build_report(
        self,
        users: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
        force_refresh: bool = False,
    ) -> GlobalStats:
        """Return the report, from cache unless ``force_refresh`` is set."""
        if not force_refresh:
            cached = await self._cached_report()
            if cached is not None:
                return cached

        report = await self.compute_report(
            settings.known_users_list if users is None else users, now or utcnow()
        )
        try:
            await self.store.set(keys.GLOBAL_STATS, report.to_store(), ttl=self.cache_ttl)
        except StoreError as e:
            logger.warning(f"Failed to cache live stats report: {e}")
        return report

    async def _cached_report(self) -> Optional[GlobalStats]:
        try:
            data = await self.store.get(keys.GLOBAL_STATS)
            if data is None:
                return None
            return GlobalStats.model_validate(data)
        except (StoreError, ValidationError) as e:
            logger.warning(f"Ignoring cached live stats report: {e}")
            return None

    async def compute_report(self, users: Iterable[str], now: datetime) -> GlobalStats:
        user_reports: list[UserReport] = []
        channel_totals: dict[str, _ChannelTotals] = {}
        total_watch_time = 0
        total_sessions = 0

        for username in users:
            try:
                report = await self._user_report(username, channel_totals)
            except (StoreError, ValidationError) as e:
                logger.error(f"Failed to read live stats for {username}: {e}")
                continue
            if report is None:
                continue
            user_reports.append(report)
            total_watch_time += report.total_watch_time
            total_sessions += report.total_sessions

        user_reports.sort(key=lambda r: r.total_watch_time, reverse=True)

        hot_channels = [
            HotChannel(
                channel_id=c.channel_id,
                channel_name=c.channel_name,
                channel_group=c.channel_group,
                total_watch_time=c.watch_time,
                total_users=len(c.users),
                total_sessions=c.sessions,
            )
            for c in _ranked(channel_totals, HOT_CHANNELS)
        ]

        daily_trend = await self.daily_trend(now)

        return GlobalStats(
            total_users=len(user_reports),
            total_watch_time=total_watch_time,
            total_sessions=total_sessions,
            today_active_users=daily_trend[-1].users,
            hot_channels=hot_channels,
            daily_trend=daily_trend,
            user_stats=user_reports,
        )

    async def _user_report(
        self, username: str, channel_totals: dict[str, _ChannelTotals]
    ) -> Optional[UserReport]:
        stats_data = await self.store.get(keys.user_stats(username))
        sessions_data = await self.store.get(keys.sessions(username)) or []
        if not stats_data and not sessions_data:
            return None

        stats = UserStats.model_validate(stats_data) if stats_data else UserStats()
        sessions = [WatchSession.model_validate(s) for s in sessions_data]

        favorites: dict[str, _ChannelTotals] = {}
        for session in sessions:
            _fold(favorites, session, username)
            _fold(channel_totals, session, username)

        return UserReport(
            username=username,
            total_watch_time=stats.total_watch_time,
            total_sessions=stats.total_sessions,
            last_watch_time=stats.last_watch_time,
            favorite_channels=[
                FavoriteChannel(
                    channel_id=c.channel_id,
                    channel_name=c.channel_name,
                    channel_group=c.channel_group,
                    watch_time=c.watch_time,
                    watch_count=c.sessions,
                )
                for c in _ranked(favorites, FAVORITE_CHANNELS)
            ],
            recent_sessions=sessions[:RECENT_SESSIONS],
        )

    async def daily_trend(self, now: datetime, days: int = TREND_DAYS) -> list[DailyTrendPoint]:
        """Daily totals for the last ``days`` UTC days, oldest first, zero-filled."""
        trend = []
        for offset in range(days - 1, -1, -1):
            day = keys.day_of(now - timedelta(days=offset))
            try:
                data = await self.store.get(keys.daily(day))
                stats = DailyStats.model_validate(data) if data else DailyStats()
            except (StoreError, ValidationError) as e:
                logger.error(f"Failed to read daily stats for {day}: {e}")
                stats = DailyStats()
            trend.append(
                DailyTrendPoint(
                    date=day,
                    watch_time=stats.watch_time,
                    sessions=stats.sessions,
                    users=len(stats.users),
                )
            )
        return trend


# Global reporter instance
reporter = StatsReporter(store)
