from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from teamsync.storage.models import Session


class RedisCache:
    """Thin Redis wrapper for sessions, OAuth state and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for Redis."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # sessions -------------------------------------------------------------

    async def cache_session(self, session: Session) -> None:
        ttl = self._ttl_seconds(session.expires_at)
        payload = json.dumps(
            {
                "identity_id": session.identity_id,
                "created_at": session.created_at.isoformat(),
                "expires_at": session.expires_at.isoformat(),
            }
        )
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session.id}", payload, ex=ttl)
        # index for bulk revocation
        pipe.sadd(f"auth:identity_sessions:{session.identity_id}", session.id)
        pipe.expire(f"auth:identity_sessions:{session.identity_id}", ttl)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"auth:session:{session_id}")
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return Session(
                id=session_id,
                identity_id=data["identity_id"],
                created_at=datetime.fromisoformat(data["created_at"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # unreadable entry is treated as no session
            await self.client.delete(f"auth:session:{session_id}")
            return None

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(f"auth:session:{session_id}")

    async def revoke_identity_sessions(self, identity_id: str) -> int:
        index_key = f"auth:identity_sessions:{identity_id}"
        session_ids = await self.client.smembers(index_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(index_key)
        await pipe.execute()
        return len(session_ids)

    # rate limiting --------------------------------------------------------

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # hashed so user-controlled parts cannot collide through delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Consume from a Redis token bucket; the Lua script keeps refill and take atomic."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # oauth ----------------------------------------------------------------

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        ttl = self._ttl_seconds(expires_at)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically consume an OAuth state so a callback cannot be replayed."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            return data["provider"], datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None
