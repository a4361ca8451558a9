from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits, leases and hot revocation state."""

    # Atomic refill + consume
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

    # Check lockout, count the failure and trip the lockout in one step
    _TWO_FACTOR_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _two_factor_keys(principal_id: str) -> tuple[str, str]:
        return f"2fa:lockout:{principal_id}", f"2fa:attempts:{principal_id}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket rate limit evaluated atomically in Lua."""

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

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Hot copy of a revocation-index entry, expiring with the token."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def acquire_lease(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Take a named lease unless another owner holds it."""
        return bool(
            await self.client.set(f"lease:{name}", owner, nx=True, ex=max(1, ttl_seconds))
        )

    async def mark_signature_used(self, signature: str, ttl_seconds: int) -> bool:
        """Record a request signature; False when it was already seen."""
        return bool(
            await self.client.set(f"sig:used:{signature}", "1", nx=True, ex=max(1, ttl_seconds))
        )

    async def check_two_factor_lockout(self, principal_id: str) -> bool:
        lockout_key, _ = self._two_factor_keys(principal_id)
        return bool(await self.client.exists(lockout_key))

    async def atomic_two_factor_attempt(
        self, principal_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed second-factor attempt.

        Returns:
            Tuple of (is_now_locked_out, current_attempts)
        """
        lockout_key, attempts_key = self._two_factor_keys(principal_id)
        result = await self.client.eval(
            self._TWO_FACTOR_ATTEMPT_SCRIPT,
            2,
            lockout_key,
            attempts_key,
            max_attempts,
            lockout_seconds,
        )
        return (bool(result[0]), int(result[1]))

    async def clear_two_factor_attempts(self, principal_id: str) -> None:
        _, attempts_key = self._two_factor_keys(principal_id)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes async methods so callers await it exactly like
    ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

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
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:access:denylist:{jti}"))

    async def acquire_lease(self, name: str, owner: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(f"lease:{name}", owner, nx=True, ex=max(1, ttl_seconds))
        )

    async def mark_signature_used(self, signature: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(f"sig:used:{signature}", "1", nx=True, ex=max(1, ttl_seconds))
        )

    async def check_two_factor_lockout(self, principal_id: str) -> bool:
        lockout_key, _ = RedisCache._two_factor_keys(principal_id)
        return bool(self._sync_client.exists(lockout_key))

    async def atomic_two_factor_attempt(
        self, principal_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        lockout_key, attempts_key = RedisCache._two_factor_keys(principal_id)
        result = self._sync_client.eval(
            RedisCache._TWO_FACTOR_ATTEMPT_SCRIPT,
            2,
            lockout_key,
            attempts_key,
            max_attempts,
            lockout_seconds,
        )
        return (bool(result[0]), int(result[1]))

    async def clear_two_factor_attempts(self, principal_id: str) -> None:
        _, attempts_key = RedisCache._two_factor_keys(principal_id)
        self._sync_client.delete(attempts_key)

    def close_sync(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.close_sync()
