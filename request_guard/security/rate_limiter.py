"""
Fixed-Window Rate Limiting

Per-category request quotas keyed by 'category:identity'. Each key owns a
fixed window; the first hit opens it with count 1 and every further hit inside
the window increments the count. A hit past window_end replaces the entry with
a fresh window instead of mutating the old one.

Rejected hits are still counted, so a client that keeps hammering a limited
key stays limited until the window expires.

Stores:
- InMemoryRateLimitStore: sharded dictionaries with one threading.Lock per
  shard, so the read-check-increment of a key is atomic and unrelated keys
  rarely contend. Expired entries are swept cooperatively on each check.
- RedisRateLimitStore: SET NX PX, INCR and PTTL in one MULTI transaction so
  several application processes share one quota. Expiry is left to Redis.

Dependencies:
- redis 5.0+: Distributed counter backend
- structlog 23.1+: Rate limit decision logging
- prometheus-client 0.17+: Rejection counters
"""

import math
import threading
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

import redis
import structlog

from request_guard.config.settings import RateLimitConfig, get_security_config
from request_guard.monitoring.metrics import security_metrics
from request_guard.security.audit import SecurityEventType
from request_guard.security.exceptions import InternalSecurityError, RateLimitExceeded


logger = structlog.get_logger("security.rate_limiter")


@dataclass(frozen=True)
class RateLimitEntry:
    key: str
    count: int
    window_start: float
    window_end: float

    @classmethod
    def open(cls, key: str, now: float, window_seconds: float) -> 'RateLimitEntry':
        return cls(key=key, count=1, window_start=now, window_end=now + window_seconds)

    @property
    def window_seconds(self) -> float:
        return self.window_end - self.window_start

    def is_expired(self, now: float) -> bool:
        return now >= self.window_end

    def incremented(self) -> 'RateLimitEntry':
        return replace(self, count=self.count + 1)


class RateLimitStore(ABC):
    """Counter storage for the rate limiter."""

    @abstractmethod
    def hit(self, key: str, window_seconds: float, now: float) -> RateLimitEntry:
        """
        Atomically count one request against key.

        Opens a new window when the key is absent or expired, otherwise
        increments the current window.
        """

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitEntry]:
        """Current entry for key, without counting a hit."""

    @abstractmethod
    def reset(self, key: str) -> None:
        """Forget key entirely."""

    @abstractmethod
    def sweep(self, now: float, window_seconds: float) -> int:
        """Remove entries stale by more than one window; return how many."""


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local store backed by sharded dictionaries.

    Args:
        shard_count: Number of independently locked shards
    """

    def __init__(self, shard_count: int = 16) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self._shards: List[Tuple[threading.Lock, Dict[str, RateLimitEntry]]] = [
            (threading.Lock(), {}) for _ in range(shard_count)
        ]

    def _shard_for(self, key: str) -> Tuple[threading.Lock, Dict[str, RateLimitEntry]]:
        return self._shards[zlib.crc32(key.encode('utf-8')) % len(self._shards)]

    def hit(self, key: str, window_seconds: float, now: float) -> RateLimitEntry:
        lock, entries = self._shard_for(key)
        with lock:
            entry = entries.get(key)
            if entry is None or entry.is_expired(now):
                entry = RateLimitEntry.open(key, now, window_seconds)
            else:
                entry = entry.incremented()
            entries[key] = entry
            return entry

    def get(self, key: str) -> Optional[RateLimitEntry]:
        lock, entries = self._shard_for(key)
        with lock:
            return entries.get(key)

    def reset(self, key: str) -> None:
        lock, entries = self._shard_for(key)
        with lock:
            entries.pop(key, None)

    def sweep(self, now: float, window_seconds: float) -> int:
        cutoff = now - window_seconds
        removed = 0
        for lock, entries in self._shards:
            with lock:
                stale = [key for key, entry in entries.items() if entry.window_end < cutoff]
                for key in stale:
                    del entries[key]
                removed += len(stale)
        return removed

    def __len__(self) -> int:
        total = 0
        for lock, entries in self._shards:
            with lock:
                total += len(entries)
        return total


class RedisRateLimitStore(RateLimitStore):
    """
    Redis-backed store shared by every application process.

    Keys expire on their own through PX, so sweep() has nothing to do.
    Redis failures raise InternalSecurityError; the limiter fails closed.

    Args:
        client: redis.Redis instance
        key_prefix: Namespace prepended to every rate limit key
    """

    def __init__(self, client: redis.Redis, key_prefix: str = 'request_guard:ratelimit:') -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, key_prefix: str = 'request_guard:ratelimit:') -> 'RedisRateLimitStore':
        return cls(redis.Redis.from_url(redis_url), key_prefix=key_prefix)

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def _unavailable(key: str, error: redis.RedisError) -> InternalSecurityError:
        logger.error(
            "Rate limit store unavailable",
            key=key,
            error=str(error),
            error_type=type(error).__name__
        )
        return InternalSecurityError(
            "Rate limit store unavailable",
            metadata={'event_type': SecurityEventType.INTERNAL_ERROR.value, 'store': 'redis'}
        )

    def hit(self, key: str, window_seconds: float, now: float) -> RateLimitEntry:
        redis_key = self._redis_key(key)
        window_ms = int(window_seconds * 1000)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(redis_key, 0, px=window_ms, nx=True)
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            _, count, ttl_ms = pipe.execute()
            if ttl_ms is None or ttl_ms < 0:
                # Key lost its TTL (e.g. restored without expiry); reopen the window
                self.client.pexpire(redis_key, window_ms)
                ttl_ms = window_ms
        except redis.RedisError as e:
            raise self._unavailable(key, e) from e

        window_end = now + ttl_ms / 1000.0
        return RateLimitEntry(
            key=key,
            count=int(count),
            window_start=window_end - window_seconds,
            window_end=window_end,
        )

    def get(self, key: str) -> Optional[RateLimitEntry]:
        redis_key = self._redis_key(key)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.get(redis_key)
            pipe.pttl(redis_key)
            count, ttl_ms = pipe.execute()
        except redis.RedisError as e:
            raise self._unavailable(key, e) from e
        if count is None or ttl_ms is None or ttl_ms < 0:
            return None
        now = time.time()
        window_end = now + ttl_ms / 1000.0
        return RateLimitEntry(key=key, count=int(count), window_start=now, window_end=window_end)

    def reset(self, key: str) -> None:
        try:
            self.client.delete(self._redis_key(key))
        except redis.RedisError as e:
            raise self._unavailable(key, e) from e

    def sweep(self, now: float, window_seconds: float) -> int:
        return 0


class RateLimiter:
    """
    Enforces per-category quotas.

    Args:
        store: Counter store, in-memory when omitted
        config: Window length and quota table
        clock: Time source returning epoch seconds
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.config = config or get_security_config().rate_limiting
        self.store = store if store is not None else InMemoryRateLimitStore(shard_count=self.config.shard_count)
        self.clock = clock

    @staticmethod
    def make_key(category: str, identity: str) -> str:
        return f"{category}:{identity}"

    def quota_for(self, category: str) -> int:
        return self.config.limit_for(category)

    def check(self, category: str, identity: str) -> RateLimitEntry:
        """
        Count one request and enforce the category quota.

        Args:
            category: Quota category, e.g. 'login' or 'default'
            identity: User ID or client IP the quota is tracked for

        Returns:
            The entry after counting this request

        Raises:
            RateLimitExceeded: When the count exceeds the quota
        """
        now = self.clock()
        window = self.config.window_seconds
        self.store.sweep(now, window)

        key = self.make_key(category, identity)
        entry = self.store.hit(key, window, now)
        limit = self.quota_for(category)

        if entry.count > limit:
            retry_after = max(1, math.ceil(entry.window_end - now))
            security_metrics['rate_limit_rejections'].labels(category=category).inc()
            logger.warning(
                "Rate limit exceeded",
                category=category,
                identity=identity,
                count=entry.count,
                limit=limit,
                retry_after_seconds=retry_after
            )
            raise RateLimitExceeded(
                f"Rate limit exceeded for {category}",
                retry_after_seconds=retry_after,
                metadata={
                    'event_type': SecurityEventType.RATE_LIMIT_EXCEEDED.value,
                    'category': category,
                    'identity': identity,
                    'count': entry.count,
                    'limit': limit,
                }
            )
        return entry

    def reset(self, category: str, identity: str) -> None:
        """Clear the counter for a key, e.g. after a successful login."""
        self.store.reset(self.make_key(category, identity))
        logger.debug("Rate limit counter reset", category=category, identity=identity)


__all__ = [
    'RateLimitEntry',
    'RateLimitStore',
    'InMemoryRateLimitStore',
    'RedisRateLimitStore',
    'RateLimiter',
]
