from datetime import datetime, timezone

# Key layout shared with external reporting and migration tooling.
WATCHING_PREFIX = "live:watching:"
GLOBAL_STATS = "live:global-stats"


def watching(username: str, session_tag: str) -> str:
    return f"{WATCHING_PREFIX}{username}:{session_tag}"


def sessions(username: str) -> str:
    return f"live:sessions:{username}"


def user_stats(username: str) -> str:
    return f"live:stats:{username}"


def daily(day: str) -> str:
    return f"live:daily:{day}"


def channel(channel_id: str) -> str:
    return f"live:channel:{channel_id}"


def day_of(moment: datetime) -> str:
    """UTC calendar date (YYYY-MM-DD) of ``moment``; naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date().isoformat()


def split_watching(key: str) -> tuple[str, str]:
    """Recover (username, session tag) from a watch-state key."""
    username, _, session_tag = key[len(WATCHING_PREFIX) :].rpartition(":")
    return username, session_tag
