from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_path: str = "./data/livetrack.db"
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 8086
    heartbeat_interval_seconds: int = 30
    watch_state_ttl_seconds: int = 60
    min_session_seconds: Optional[int] = None
    max_session_seconds: int = 8 * 60 * 60
    session_history_limit: int = 100
    daily_stats_retention_days: int = 7
    stats_cache_ttl_seconds: int = 5 * 60
    known_users: str = ""
    admin_users: str = ""
    sweep_interval_seconds: int = 60
    settle_expired_states: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @model_validator(mode="after")
    def _check_windows(self) -> "Settings":
        if self.heartbeat_interval_seconds <= 0:
            raise ValueError("heartbeat_interval_seconds must be positive")
        if self.watch_state_ttl_seconds <= self.heartbeat_interval_seconds:
            raise ValueError(
                "watch_state_ttl_seconds must be greater than heartbeat_interval_seconds"
            )
        if self.min_session_seconds is None:
            self.min_session_seconds = self.heartbeat_interval_seconds
        if self.max_session_seconds < self.min_session_seconds:
            raise ValueError("max_session_seconds must not be below min_session_seconds")
        return self

    @property
    def database_path_resolved(self) -> Path:
        """Get resolved database path."""
        path = Path(self.database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def daily_stats_ttl_seconds(self) -> int:
        return self.daily_stats_retention_days * 24 * 60 * 60

    @property
    def known_users_list(self) -> list[str]:
        """User directory the stats report iterates over."""
        return _split_names(self.known_users)

    @property
    def admin_users_list(self) -> list[str]:
        return _split_names(self.admin_users)


def _split_names(value: str) -> list[str]:
    names = []
    for name in value.split(","):
        name = name.strip()
        if name and name not in names:
            names.append(name)
    return names


settings = Settings()
