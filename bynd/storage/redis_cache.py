from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV: now, tokens per second, capacity, cost.
# Returns {allowed, tokens left, seconds until enough tokens}.
_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local per_second = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'tokens', 'ts')
local level = tonumber(state[1]) or capacity
local stamp = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - stamp) * per_second)

local granted = 0
local wait = 0
if level >= cost then
  level = level - cost
  granted = 1
else
  wait = math.ceil((cost - level) / per_second)
end

redis.call('HSET', bucket, 'tokens', level, 'ts', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / per_second)))
return {granted, level, wait}
"""

_ACTIVE_PREFIX = "bynd:access:live:"
_DENY_PREFIX = "bynd:access:deny:"


class RedisCache:
    """Shared rate-limit buckets and access-token revocation state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; raises on failure."""
        client = Redis.from_url(
            self.redis_url,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            client.ping()
        finally:
            client.close()

    @staticmethod
    def _bucket_key(subject: str) -> str:
        # subjects embed client IPs; hashing keeps the keyspace fixed-width
        return "bynd:rate:" + hashlib.sha256(subject.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        granted, level, wait = await self._consume(
            keys=[self._bucket_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        allowed = int(granted) == 1
        if not return_remaining:
            return allowed
        return allowed, max(0, int(float(level))), int(wait or 0)

    async def track_access_token(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(_ACTIVE_PREFIX + jti, "1", ex=max(1, ttl_seconds))

    async def access_token_ttl(self, jti: str) -> int:
        """Seconds left on a tracked jti; Redis answers -2 for unknown keys."""
        return int(await self.client.ttl(_ACTIVE_PREFIX + jti))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(_DENY_PREFIX + jti, "1", ex=max(1, ttl_seconds))
            pipe.delete(_ACTIVE_PREFIX + jti)
            await pipe.execute()

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return await self.client.exists(_DENY_PREFIX + jti) > 0

    async def close(self) -> None:
        await self.client.aclose()
