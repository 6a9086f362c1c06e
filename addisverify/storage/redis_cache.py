from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any, Awaitable, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from addisverify.storage.errors import CacheUnavailable


class RedisCache:
    """Redis-backed challenge store and rate limiter."""

    # Upper bound for any single cache round trip
    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-set: write challenge + lock only if no lock is held
    _PUT_CHALLENGE_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then
  return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('SET', KEYS[2], '1', 'EX', ARGV[3])
return 1
"""

    # Token bucket: atomic refill + consume
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: Optional[float] = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._put_challenge = self.client.register_script(self._PUT_CHALLENGE_SCRIPT)
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _otp_key(phone: str) -> str:
        return f"otp:{phone}"

    @staticmethod
    def _lock_key(phone: str) -> str:
        return f"lock:otp:{phone}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so client input cannot collide with other keys."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def _bounded(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise CacheUnavailable(f"redis {op} timed out", {"op": op}) from exc
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(f"redis {op} failed", {"op": op}) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def lock_exists(self, phone: str) -> bool:
        return bool(await self._bounded("exists", self.client.exists(self._lock_key(phone))))

    async def put_challenge_and_lock(
        self, phone: str, challenge_hash: str, challenge_ttl: int, lock_ttl: int
    ) -> bool:
        """Store the challenge hash and the issuance lock as one unit.

        Returns False without writing anything when a lock is already held.
        """
        result = await self._bounded(
            "put_challenge",
            self._put_challenge(
                keys=[self._otp_key(phone), self._lock_key(phone)],
                args=[challenge_hash, int(challenge_ttl), int(lock_ttl)],
            ),
        )
        return bool(int(result))

    async def get_challenge(self, phone: str) -> Optional[str]:
        return await self._bounded("get", self.client.get(self._otp_key(phone)))

    async def delete_challenge(self, phone: str) -> None:
        await self._bounded("delete", self.client.delete(self._otp_key(phone)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._bounded(
            "rate_limit",
            self._token_bucket(keys=[safe_key], args=[time.time(), refill_rate, limit, 1]),
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
