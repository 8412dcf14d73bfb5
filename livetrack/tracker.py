import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from . import keys
from .config import settings
from .models import ChannelIdentity, WatchSession, WatchState
from .settlement import SessionSettler
from .store import CounterStore, store

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatchTracker:
    """Keeps the live watch state of every (user, browser tab) pair.

    A state is refreshed by each heartbeat and lives for ``state_ttl`` seconds
    after the last one. Switching channels or ending the watch settles it
    through the ``SessionSettler``. With ``settle_expired`` on, a state that
    timed out is also settled, by the sweep or by the next heartbeat on the
    same tab, whichever comes first.
    """

    def __init__(
        self,
        store: CounterStore,
        settler: Optional[SessionSettler] = None,
        state_ttl: Optional[int] = None,
        settle_expired: Optional[bool] = None,
        max_locks: int = 1024,
    ):
        self.store = store
        self.settler = settler or SessionSettler(store)
        self.state_ttl = state_ttl or settings.watch_state_ttl_seconds
        self.settle_expired = (
            settings.settle_expired_states if settle_expired is None else settle_expired
        )
        self._max_locks = max_locks
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            # Drop idle locks before growing past the bound
            if len(self._locks) >= self._max_locks:
                for k, lock in list(self._locks.items()):
                    if not lock.locked():
                        del self._locks[k]
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _load_state(self, key: str) -> Optional[WatchState]:
        data = await self.store.get(key)
        if data is None:
            return None
        try:
            return WatchState.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable watch state {key}: {e}")
            return None

    async def _save_state(self, key: str, state: WatchState) -> None:
        await self.store.set(key, state.to_store(), ttl=self.state_ttl)

    def _watch_key(self, username: str, session_tag: str) -> str:
        if not username or not session_tag:
            raise ValueError("username and session tag are required")
        # the sweep recovers the username by splitting the key on the last ':'
        if ":" in session_tag:
            raise ValueError("session tag must not contain ':'")
        return keys.watching(username, session_tag)

    async def record_heartbeat(
        self,
        username: str,
        session_tag: str,
        channel: ChannelIdentity,
        now: Optional[datetime] = None,
    ) -> WatchState:
        """Register one heartbeat and return the resulting live state.

        Raises ``StoreError`` when the state cannot be read or written. The
        previous channel is settled only after the new state is saved, and a
        failure while settling it is logged, not raised.
        """
        key = self._watch_key(username, session_tag)
        now = now or utcnow()

        async with self._get_lock(key):
            state = await self._load_state(key)

            if state is not None and state.same_channel(channel):
                state = state.model_copy(
                    update={
                        "last_heartbeat": now,
                        "heartbeat_count": state.heartbeat_count + 1,
                    }
                )
                await self._save_state(key, state)
                return state

            new_state = WatchState(
                **channel.model_dump(),
                start_time=now,
                last_heartbeat=now,
                heartbeat_count=1,
            )

            if state is None and self.settle_expired:
                previous = await self.store.swap(key, new_state.to_store(), ttl=self.state_ttl)
                if previous is not None:
                    await self._settle_expired(username, key, previous)
            else:
                await self._save_state(key, new_state)
                if state is not None:
                    logger.info(
                        f"{username} switched from {state.channel_name} to {channel.channel_name}"
                    )
                    await self.settler.settle(username, state, now)

        return new_state

    async def end_watch(
        self, username: str, session_tag: str, now: Optional[datetime] = None
    ) -> Optional[WatchSession]:
        """Settle and remove the live state, if there is one."""
        key = self._watch_key(username, session_tag)
        now = now or utcnow()

        async with self._get_lock(key):
            state = await self._load_state(key)
            if state is None:
                return None
            session = await self.settler.settle(username, state, now)
            await self.store.delete(key)

        logger.info(f"Watch ended: {username} session={session_tag}")
        return session

    async def current_state(self, username: str, session_tag: str) -> Optional[WatchState]:
        return await self._load_state(keys.watching(username, session_tag))

    async def count_watching(self) -> int:
        """Number of live watch states."""
        return await self.store.count_prefix(keys.WATCHING_PREFIX)

    async def _settle_expired(self, username: str, key: str, data) -> Optional[WatchSession]:
        try:
            state = WatchState.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping unreadable expired state {key}: {e}")
            return None
        return await self.settler.settle(username, state, state.last_heartbeat)

    async def sweep(self, settle_expired: Optional[bool] = None) -> int:
        """Run one maintenance pass over expired keys.

        With ``settle_expired`` set, watch states that timed out are settled
        with their last heartbeat as end time before they are dropped.
        Otherwise they are discarded unsettled, like any other expired key.
        Returns the number of sessions settled.
        """
        if settle_expired is None:
            settle_expired = self.settle_expired
        settled = 0
        if settle_expired:
            for key, data in await self.store.pop_expired(keys.WATCHING_PREFIX):
                username, _ = keys.split_watching(key)
                if await self._settle_expired(username, key, data):
                    settled += 1
        purged = await self.store.purge_expired()
        if settled or purged:
            logger.info(f"Sweep settled {settled} expired state(s), purged {purged} key(s)")
        return settled


# Global tracker instance
tracker = WatchTracker(store)
