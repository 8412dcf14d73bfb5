import logging
from datetime import datetime
from typing import Optional

from .aggregates import apply_session
from .config import settings
from .models import WatchSession, WatchState
from .store import CounterStore

logger = logging.getLogger(__name__)


class SessionSettler:
    """Turns finished watch states into session records and aggregate updates."""

    def __init__(
        self,
        store: CounterStore,
        heartbeat_interval: Optional[int] = None,
        min_duration: Optional[int] = None,
        max_duration: Optional[int] = None,
        history_limit: Optional[int] = None,
        daily_ttl: Optional[int] = None,
    ):
        self.store = store
        self.heartbeat_interval = heartbeat_interval or settings.heartbeat_interval_seconds
        self.min_duration = (
            min_duration if min_duration is not None else settings.min_session_seconds
        )
        self.max_duration = max_duration or settings.max_session_seconds
        self.history_limit = history_limit or settings.session_history_limit
        self.daily_ttl = daily_ttl or settings.daily_stats_ttl_seconds

    def duration_of(self, state: WatchState) -> int:
        """Watched seconds credited to a state.

        Counted from heartbeats rather than timestamps, so client clock skew and
        pacing jitter do not leak into the totals.
        """
        return state.heartbeat_count * self.heartbeat_interval

    def build_session(self, state: WatchState, end_time: datetime) -> Optional[WatchSession]:
        """Return the session for ``state``, or None when its duration is out of range."""
        duration = self.duration_of(state)
        if duration < self.min_duration:
            logger.info(f"Session too short, skipped: {state.channel_name} {duration}s")
            return None
        if duration > self.max_duration:
            logger.warning(f"Session duration anomalous, skipped: {state.channel_name} {duration}s")
            return None

        return WatchSession(
            channel_id=state.channel_id,
            channel_name=state.channel_name,
            channel_group=state.channel_group,
            channel_logo=state.channel_logo,
            source_key=state.source_key,
            source_name=state.source_name,
            start_time=state.start_time,
            end_time=end_time,
            duration=duration,
            heartbeat_count=state.heartbeat_count,
        )

    async def settle(
        self, username: str, state: WatchState, end_time: datetime
    ) -> Optional[WatchSession]:
        """Record ``state`` as a finished session and fold it into the aggregates.

        Never raises: failures are logged so the heartbeat that triggered the
        settlement still goes through. Returns the recorded session, or None
        when it was discarded or could not be stored.
        """
        session = self.build_session(state, end_time)
        if session is None:
            return None

        try:
            await apply_session(
                self.store,
                username,
                session,
                history_limit=self.history_limit,
                daily_ttl=self.daily_ttl,
            )
        except Exception as e:
            logger.error(f"Failed to settle session for {username}: {e}")
            return None

        logger.info(
            f"Session settled: {username} watched {state.channel_name} for {session.duration}s"
        )
        return session
