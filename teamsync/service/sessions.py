from __future__ import annotations

from typing import Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from teamsync.logging import get_logger
from teamsync.storage.common import AuthStore
from teamsync.storage.errors import StoreUnavailable
from teamsync.storage.models import Session, utcnow
from teamsync.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionStore:
    """Server-side session records.

    Sessions live in Redis when a cache is configured and in the durable
    store otherwise; each lookup is a single read against whichever backend
    is active.
    """

    def __init__(self, store: AuthStore, cache: Optional[RedisCache], *, ttl_minutes: int) -> None:
        self.store = store
        self.cache = cache
        self.ttl_minutes = ttl_minutes

    async def create(self, identity_id: str) -> Session:
        if self.cache is None:
            return self.store.create_session(identity_id, ttl_minutes=self.ttl_minutes)
        session = Session.new(identity_id, ttl_minutes=self.ttl_minutes)
        try:
            await self.cache.cache_session(session)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("session cache unavailable", backend="redis") from exc
        return session

    async def lookup(self, session_id: str) -> Optional[str]:
        """Return the identity id of a live session, or None."""
        if self.cache is None:
            session = self.store.get_session(session_id)
        else:
            try:
                session = await self.cache.get_session(session_id)
            except (RedisConnectionError, RedisTimeoutError) as exc:
                logger.error("session_lookup_failed", backend="redis", error=str(exc))
                raise StoreUnavailable("session cache unavailable", backend="redis") from exc
        if session is None or not session.is_live(utcnow()):
            return None
        return session.identity_id

    async def destroy(self, session_id: str) -> None:
        if self.cache is None:
            self.store.revoke_session(session_id)
            return
        try:
            await self.cache.revoke_session(session_id)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("session cache unavailable", backend="redis") from exc

    async def destroy_all(self, identity_id: str) -> None:
        if self.cache is None:
            self.store.revoke_identity_sessions(identity_id)
            return
        try:
            await self.cache.revoke_identity_sessions(identity_id)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("session cache unavailable", backend="redis") from exc
