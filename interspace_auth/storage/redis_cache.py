from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RATE_KEY_PREFIX = "interspace:rate:"
BLACKLIST_KEY_PREFIX = "interspace:blacklist:"

# KEYS[1] bucket; ARGV now, refill per second, capacity, cost.
# Returns {allowed, tokens left, seconds until a request would pass}.
TOKEN_BUCKET_LUA = """
local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local tokens = tonumber(state[1]) or capacity
local last = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)
local allowed = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait = math.ceil((cost - tokens) / rate)
end
redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, tokens, wait}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def rate_key(key: str) -> str:
    # caller keys embed emails and addresses; only the digest reaches Redis
    return RATE_KEY_PREFIX + hashlib.sha256(key.encode()).hexdigest()


def blacklist_key(token_hash: str) -> str:
    return BLACKLIST_KEY_PREFIX + token_hash


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _bucket_result(raw, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, wait = raw
    allowed = bool(int(allowed))
    if return_remaining:
        return allowed, max(0, int(float(tokens))), int(wait or 0)
    return allowed


class RedisCache:
    """Rate-limit buckets and a mirror of the token blacklist.

    Postgres stays authoritative for revocations; the mirror lets the
    per-request blacklist check skip the database in the common case.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        # sync ping so the async client never binds to a throwaway loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._bucket(
            keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def mark_token_blacklisted(self, token_hash: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(blacklist_key(token_hash), "1", ex=ttl_seconds)

    async def is_token_blacklisted(self, token_hash: str) -> bool:
        return bool(await self.client.exists(blacklist_key(token_hash)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same awaitable surface as RedisCache over a blocking client, for TEST_MODE."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _bucket_result(raw, return_remaining)

    async def mark_token_blacklisted(self, token_hash: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(blacklist_key(token_hash), "1", ex=ttl_seconds)

    async def is_token_blacklisted(self, token_hash: str) -> bool:
        return bool(self.client.exists(blacklist_key(token_hash)))

    async def close(self) -> None:
        self.client.close()


Cache = Optional[Union[RedisCache, SyncRedisCache]]
