import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger("saheli.rate_limit")

KEY_PREFIX = "saheli-rate"


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


def limit_key(scope: str, subject: str) -> str:
    return f"{scope}:{subject}"


class InMemoryRateLimiter:
    """Sliding-window limiter for a single process."""

    def __init__(self, requests_per_window: int, cleanup_minutes: int = 10, *, window_seconds: int = 60) -> None:
        self.requests_per_window = requests_per_window
        self.cleanup_seconds = cleanup_minutes * 60
        self.window_seconds = max(1, int(window_seconds))
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_prune = 0.0
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        async with self._lock:
            now = time.monotonic()
            self._prune(now)
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.requests_per_window:
                return False
            hits.append(now)
            return True

    async def reset(self) -> None:
        self._hits.clear()
        self._last_prune = 0.0

    async def close(self) -> None:
        return None

    def _prune(self, now: float) -> None:
        if now - self._last_prune < 60:
            return
        stale_before = now - max(self.cleanup_seconds, self.window_seconds)
        for key in [key for key, hits in self._hits.items() if not hits or hits[-1] < stale_before]:
            self._hits.pop(key, None)
        self._last_prune = now


# Sorted set of hit timestamps per key; the sequence key keeps members unique within one millisecond.
SLIDING_WINDOW_LUA = r'''
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local ttl_seconds = tonumber(ARGV[3])

local time = redis.call('TIME')
local now_ms = (time[1] * 1000) + math.floor(time[2] / 1000)

redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now_ms - window_ms)
if redis.call('ZCARD', KEYS[1]) >= limit then
  return 0
end

local seq = redis.call('INCR', KEYS[2])
redis.call('ZADD', KEYS[1], now_ms, tostring(now_ms) .. ':' .. tostring(seq))
redis.call('EXPIRE', KEYS[1], ttl_seconds)
redis.call('EXPIRE', KEYS[2], ttl_seconds)
return 1
'''


class RedisRateLimiter:
    """Limiter shared by every web instance through Redis.

    When Redis errors, the limiter fails open onto an in-process window for
    ``fail_open_seconds`` and probes Redis again every ``health_probe_seconds``.
    """

    def __init__(
        self,
        redis_url: str,
        requests_per_window: int,
        cleanup_minutes: int = 10,
        redis_client: redis.Redis | None = None,
        fail_open_seconds: int = 300,
        health_probe_seconds: float = 5.0,
        *,
        window_seconds: int = 60,
    ) -> None:
        self.requests_per_window = requests_per_window
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)
        self.window_seconds = max(1, int(window_seconds))
        self.ttl_seconds = max(self.window_seconds + 2, int(cleanup_minutes * 60))
        self.fail_open_seconds = max(1, fail_open_seconds)
        self.health_probe_seconds = max(0.5, health_probe_seconds)
        self._script_sha: str | None = None
        self._fallback = InMemoryRateLimiter(
            requests_per_window, cleanup_minutes=cleanup_minutes, window_seconds=window_seconds
        )
        self._fail_open_until = 0.0
        self._last_probe = 0.0

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        if self._fail_open_until > now and not await self._probe(now):
            return await self._fallback.allow(key)
        try:
            return bool(await self._eval(f"{KEY_PREFIX}:{key}", f"{KEY_PREFIX}:{key}:seq"))
        except RedisError:
            logger.warning("rate_limit_redis_unavailable", extra={"extra": {"fail_open_seconds": self.fail_open_seconds}})
            self._fail_open_until = now + self.fail_open_seconds
            self._last_probe = now
            await self._fallback.reset()
            return await self._fallback.allow(key)

    async def reset(self) -> None:
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(cursor=cursor, match=f"{KEY_PREFIX}:*", count=100)
                if keys:
                    await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("rate_limit_reset_failed")

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("rate_limit_close_failed")

    async def _probe(self, now: float) -> bool:
        if now - self._last_probe < self.health_probe_seconds:
            return False
        self._last_probe = now
        try:
            await self.redis.ping()
        except RedisError:
            return False
        self._fail_open_until = 0.0
        logger.info("rate_limit_redis_recovered")
        return True

    async def _eval(self, set_key: str, seq_key: str) -> int:
        args = (2, set_key, seq_key, self.requests_per_window, self.window_seconds * 1000, self.ttl_seconds)
        if not self._script_sha:
            self._script_sha = await self.redis.script_load(SLIDING_WINDOW_LUA)
        try:
            return await self.redis.evalsha(self._script_sha, *args)
        except ResponseError as exc:
            if "NOSCRIPT" not in str(exc):
                raise
        self._script_sha = None
        return await self.redis.eval(SLIDING_WINDOW_LUA, *args)


def create_rate_limiter(
    app_settings,
    requests_per_window: int | None = None,
    *,
    window_seconds: int = 60,
) -> RateLimiter:
    limit = requests_per_window or app_settings.rate_limit_per_minute
    if getattr(app_settings, "redis_url", None):
        return RedisRateLimiter(
            app_settings.redis_url,
            limit,
            cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
            fail_open_seconds=app_settings.rate_limit_fail_open_seconds,
            health_probe_seconds=app_settings.rate_limit_redis_probe_seconds,
            window_seconds=window_seconds,
        )
    return InMemoryRateLimiter(
        limit,
        cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
        window_seconds=window_seconds,
    )
