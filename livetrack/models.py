from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


class StoredModel(BaseModel):
    """Base for records persisted in the counter store.

    Stored JSON uses camelCase field names so the records stay readable by
    tooling that consumes the ``live:*`` keys directly.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ChannelIdentity(StoredModel):
    """Channel being watched and the content source it came from."""

    channel_id: str = Field(min_length=1)
    channel_name: str = Field(min_length=1)
    channel_group: str = ""
    channel_logo: str = ""
    source_key: str = Field(min_length=1)
    source_name: str = ""


class WatchState(ChannelIdentity):
    """In-progress viewing state for one (user, browser tab) pair."""

    start_time: datetime
    last_heartbeat: datetime
    heartbeat_count: int = Field(default=1, ge=1)

    def same_channel(self, channel: ChannelIdentity) -> bool:
        return self.channel_id == channel.channel_id


class WatchSession(ChannelIdentity):
    """Finalized, immutable record of one settled watch state."""

    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: datetime
    duration: int = Field(ge=0)
    heartbeat_count: int


class UserStats(StoredModel):
    total_watch_time: int = 0
    total_sessions: int = 0
    last_watch_time: Optional[datetime] = None


class DailyStats(StoredModel):
    watch_time: int = 0
    sessions: int = 0
    users: set[str] = Field(default_factory=set)

    @field_serializer("users")
    def _serialize_users(self, users: set[str]) -> list[str]:
        return sorted(users)


class ChannelStats(StoredModel):
    channel_id: str
    channel_name: str
    channel_group: str = ""
    total_watch_time: int = 0
    total_sessions: int = 0
    users: set[str] = Field(default_factory=set)

    @field_serializer("users")
    def _serialize_users(self, users: set[str]) -> list[str]:
        return sorted(users)


class FavoriteChannel(StoredModel):
    """A channel ranked within one user's recent sessions."""

    channel_id: str
    channel_name: str
    channel_group: str = ""
    watch_time: int
    watch_count: int


class HotChannel(StoredModel):
    """A channel ranked across every known user."""

    channel_id: str
    channel_name: str
    channel_group: str = ""
    total_watch_time: int
    total_users: int
    total_sessions: int


class DailyTrendPoint(StoredModel):
    date: str
    watch_time: int = 0
    sessions: int = 0
    users: int = 0


class UserReport(StoredModel):
    username: str
    total_watch_time: int = 0
    total_sessions: int = 0
    last_watch_time: Optional[datetime] = None
    favorite_channels: list[FavoriteChannel] = Field(default_factory=list)
    recent_sessions: list[WatchSession] = Field(default_factory=list)


class GlobalStats(StoredModel):
    total_users: int
    total_watch_time: int
    total_sessions: int
    today_active_users: int
    hot_channels: list[HotChannel] = Field(default_factory=list)
    daily_trend: list[DailyTrendPoint] = Field(default_factory=list)
    user_stats: list[UserReport] = Field(default_factory=list)
