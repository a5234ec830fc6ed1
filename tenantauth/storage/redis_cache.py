"""Shared token buckets for login and password-reset throttling."""

from __future__ import annotations

import hashlib
import time
from typing import Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RATE_KEY_PREFIX = "tenantauth:rate:"

# KEYS[1] bucket; ARGV: now, refill per second, capacity, cost.
# Returns {allowed, tokens left, seconds until a token of `cost` is available}.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1]) or capacity
local last = tonumber(data[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

local allowed = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait = math.ceil((cost - tokens) / refill_rate)
end

redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {allowed, math.floor(tokens), wait}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def rate_key(key: str) -> str:
    """Hash the caller key so identifiers with delimiters cannot collide."""
    return RATE_KEY_PREFIX + hashlib.sha256(key.encode()).hexdigest()


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _bucket_result(raw: Sequence, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, wait = raw
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(tokens)), int(wait or 0))
    return allowed_bool


class RedisCache:
    """Async Redis client used by the running service."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # Sync ping keeps the async pool unbound from the startup loop
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
        raw = await self._token_bucket(
            keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Blocking client with the same awaitable surface, for TEST_MODE runs.

    Test clients spin up and tear down event loops freely; a synchronous
    connection is never bound to one of them.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._token_bucket(
            keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def close(self) -> None:
        self._sync_client.close()
