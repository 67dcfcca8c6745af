"""
Rate Limiter
============

Keyed window counter used for admission control.

On the first request for a key, or once the key's reset time has passed,
the window restarts with count 1 and `reset_at = now + window`. Otherwise the
count increments in place and the request is denied once it exceeds the
maximum. Denied requests carry the whole seconds left until the reset.

Counters live in a pluggable store: an in-process store guarded by a single
lock, or Redis where several instances share one budget.
"""

from __future__ import annotations

import asyncio
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog

from amoeba_core.jobs.base import Clock, utc_now

logger = structlog.get_logger(__name__)


class RateLimitExceeded(Exception):
    """Raised when rate limit is exceeded"""

    def __init__(
        self,
        message: str,
        limit: int,
        remaining: int,
        reset_at: datetime,
        retry_after: int,
    ):
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        self.retry_after = retry_after


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class RateLimitEntry:
    """Counter state for one key"""

    key: str
    count: int
    reset_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.reset_at <= now


@dataclass
class RateLimitResult:
    """Result of a rate limit check"""

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int = 0
    current: int = 0

    @property
    def headers(self) -> Dict[str, str]:
        """Get rate limit headers"""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


# =============================================================================
# STORES
# =============================================================================


class RateLimitStore(ABC):
    """Storage for per-key window counters"""

    @abstractmethod
    async def hit(self, key: str, window_ms: int, now: datetime) -> RateLimitEntry:
        """Record one request and return the counter after it"""
        pass

    @abstractmethod
    async def reset(self, key: str) -> None:
        pass

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        """Drop counters whose window has passed; returns how many were dropped"""
        pass

    @abstractmethod
    async def size(self) -> int:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    async def close(self) -> None:
        """Release what this process owns; shared counters are left intact"""
        pass


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local counters.

    Memory is bounded by the keys active within the trailing window as long
    as `purge_expired` runs periodically.
    """

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, window_ms: int, now: datetime) -> RateLimitEntry:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                entry = RateLimitEntry(
                    key=key,
                    count=1,
                    reset_at=now + timedelta(milliseconds=window_ms),
                )
                self._entries[key] = entry
            else:
                entry.count += 1
            return RateLimitEntry(entry.key, entry.count, entry.reset_at)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def size(self) -> int:
        with self._lock:
            return len(self._entries)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        await self.clear()

    def entries(self) -> List[RateLimitEntry]:
        with self._lock:
            return [RateLimitEntry(e.key, e.count, e.reset_at) for e in self._entries.values()]


class RedisRateLimitStore(RateLimitStore):
    """
    Counters shared through Redis.

    INCR, first-hit PEXPIRE and PTTL run in one Lua script so concurrent
    instances see a single atomic counter per key. Redis expires keys on its
    own, so `purge_expired` has nothing to do, and `close` only disconnects:
    other instances keep counting against the same keys.

    A client passed in is closed only when `owns_client=True`; one built
    from `redis_url` is always owned.
    """

    HIT_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "ratelimit:",
        owns_client: Optional[bool] = None,
    ):
        self._owns_client = client is None if owns_client is None else owns_client
        self._redis = client or redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._key_prefix = key_prefix
        self._hit_sha: Optional[str] = None

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def hit(self, key: str, window_ms: int, now: datetime) -> RateLimitEntry:
        if self._hit_sha is None:
            self._hit_sha = await self._redis.script_load(self.HIT_SCRIPT)

        count, ttl = await self._redis.evalsha(
            self._hit_sha,
            1,
            self._key(key),
            str(int(window_ms)),
        )
        return RateLimitEntry(
            key=key,
            count=int(count),
            reset_at=now + timedelta(milliseconds=int(ttl)),
        )

    async def reset(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def purge_expired(self, now: datetime) -> int:
        return 0

    async def size(self) -> int:
        count = 0
        async for _ in self._redis.scan_iter(match=f"{self._key_prefix}*"):
            count += 1
        return count

    async def clear(self) -> None:
        keys = [k async for k in self._redis.scan_iter(match=f"{self._key_prefix}*")]
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()
            self._hit_sha = None


# =============================================================================
# LIMITER
# =============================================================================


class RateLimiter:
    """
    Window limiter over a counter store.

    Usage:
        limiter = RateLimiter()
        await limiter.start()

        result = await limiter.allow("1.2.3.4:user_1", window_ms=60000, max_requests=5)
        if not result.allowed:
            ...  # respond 429 with result.headers

        await limiter.stop()
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        cleanup_interval: float = 60.0,
        clock: Optional[Clock] = None,
    ):
        self.store = store or InMemoryRateLimitStore()
        self.cleanup_interval = cleanup_interval
        self._clock = clock or utc_now
        self._cleanup_task: Optional[asyncio.Task] = None
        self._logger = structlog.get_logger("rate_limiter")

    async def allow(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Count one request against `key` and decide whether it may proceed"""
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")

        now = self._clock()
        entry = await self.store.hit(key, window_ms, now)
        allowed = entry.count <= max_requests

        retry_after = 0
        if not allowed:
            retry_after = max(0, math.ceil((entry.reset_at - now).total_seconds()))

        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - entry.count),
            reset_at=entry.reset_at,
            retry_after=retry_after,
            current=entry.count,
        )

    async def acquire(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Acquire permission, raising exception if denied"""
        result = await self.allow(key, window_ms, max_requests)
        if not result.allowed:
            raise RateLimitExceeded(
                message=f"Rate limit exceeded for {key}",
                limit=result.limit,
                remaining=result.remaining,
                reset_at=result.reset_at,
                retry_after=result.retry_after,
            )
        return result

    async def reset(self, key: str) -> None:
        """Reset rate limit for a key"""
        await self.store.reset(key)

    async def purge_expired(self) -> int:
        purged = await self.store.purge_expired(self._clock())
        if purged:
            self._logger.debug("rate_limit_entries_purged", count=purged)
        return purged

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic removal of expired counters"""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the cleanup task and release the store's local resources"""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.store.close()

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.purge_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("rate_limit_cleanup_error", error=str(e))


__all__ = [
    "RateLimitExceeded",
    "RateLimitEntry",
    "RateLimitResult",
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
    "RateLimiter",
]
