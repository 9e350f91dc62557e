"""
Dual-tier rate limiting for collaborator requests.

The fast tier keeps a sliding window of admitted requests per
(source, scope) key in Redis (or in process memory when no Redis is
configured) so the hot path never touches the database. The durable tier
reads ceilings and manual throttle overrides from the ``rate_limit_config``
table; it survives restarts and lets operators pause a source without a
deploy. ``DualTierRateLimiter`` composes the two and is what the consumer
receives.

Example:
    limiter = build_rate_limiter(db)
    decision = limiter.try_acquire("FL_DBPR", "FL")
    if not decision.allowed:
        time.sleep(decision.wait_seconds)
"""
import math
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Deque, Dict, Optional, Tuple

import redis

from scrapequeue import settings
from scrapequeue.db import StorageError
from scrapequeue.logging_conf import logger
from scrapequeue.models import RateLimitConfig, utcnow


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate-limit check."""

    allowed: bool
    wait_ms: int = 0
    reason: Optional[str] = None

    @property
    def wait_seconds(self) -> float:
        return self.wait_ms / 1000.0

    @classmethod
    def allow(cls) -> "RateLimitDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, wait_seconds: float, reason: str) -> "RateLimitDecision":
        return cls(allowed=False, wait_ms=max(1, int(math.ceil(wait_seconds * 1000))), reason=reason)


def window_for(requests_per_second: float) -> Tuple[int, float]:
    """Translate a ceiling into (capacity, window_seconds).

    Ceilings of one or more use a one-second window; fractional ceilings
    admit a single request per 1/rps seconds.
    """
    if requests_per_second >= 1:
        return int(requests_per_second), 1.0
    return 1, 1.0 / requests_per_second


# =============================================================================
# Fast tier window stores
# =============================================================================


class WindowStore(ABC):
    """Sliding-window admission log keyed by string."""

    @abstractmethod
    def hit(self, key: str, capacity: int, window_seconds: float) -> float:
        """Admit and record a request if the window has room.

        Returns 0 when admitted, otherwise the seconds until a slot frees up.
        """


class MemoryWindowStore(WindowStore):
    """In-process window store for single-process deployments and tests."""

    def __init__(self):
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, capacity: int, window_seconds: float) -> float:
        now = time.monotonic()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) < capacity:
                hits.append(now)
                return 0.0
            return max(0.001, hits[0] + window_seconds - now)


class RedisWindowStore(WindowStore):
    """Redis sorted-set window shared by every consumer process.

    Best effort: the count-then-add sequence is not atomic, so concurrent
    consumers may occasionally over-admit. When Redis is unreachable the
    store degrades to a per-process memory window.
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: str = "scrapequeue:ratelimit"):
        self._redis_url = redis_url or settings.REDIS_URL
        self._key_prefix = key_prefix
        self._redis: Optional[redis.Redis] = None
        self._fallback = MemoryWindowStore()

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url)
        return self._redis

    def hit(self, key: str, capacity: int, window_seconds: float) -> float:
        redis_key = f"{self._key_prefix}:{key}"
        now = time.time()
        try:
            r = self._get_redis()
            pipe = r.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            _, count, oldest = pipe.execute()

            if count < capacity:
                r.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
                r.expire(redis_key, int(math.ceil(window_seconds)) + 1)
                return 0.0

            oldest_time = oldest[0][1] if oldest else now
            return max(0.001, oldest_time + window_seconds - now)
        except redis.RedisError as e:
            logger.warning(f"Redis rate-limit store unavailable, using local window: {e}")
            return self._fallback.hit(key, capacity, window_seconds)


# =============================================================================
# Limiters
# =============================================================================


class RateLimiter(ABC):
    """Interface the consumer uses to pace collaborator calls."""

    @abstractmethod
    def try_acquire(self, source: str, scope_key: str) -> RateLimitDecision:
        """Check whether a request for (source, scope_key) may start now."""

    def record_request(self, source: str, scope_key: str, duration_ms: int) -> None:
        """Account for a completed collaborator request."""

    def throttle(self, source: str, scope_key: str, seconds: float, reason: str) -> None:
        """Pause a source for a period."""


class DurableRateLimiter(RateLimiter):
    """Durable tier: configured ceilings and manual throttle overrides."""

    def __init__(self, store, default_rps: Optional[float] = None, cache_ttl: Optional[float] = None):
        self.store = store
        self.default_rps = default_rps or settings.DEFAULT_REQUESTS_PER_SECOND
        self.cache_ttl = settings.RATE_LIMIT_CONFIG_TTL_SECONDS if cache_ttl is None else cache_ttl
        self._cache: Dict[Tuple[str, str], Tuple[float, RateLimitConfig]] = {}
        self._lock = threading.Lock()

    def get_config(self, source: str, scope_key: str) -> RateLimitConfig:
        """Current config for (source, scope_key), cached for cache_ttl seconds."""
        cache_key = (source, scope_key)
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached and now - cached[0] < self.cache_ttl:
            return cached[1]

        try:
            config = self.store.read_rate_limit_config(source, scope_key)
        except StorageError as e:
            if cached:
                logger.warning(f"Rate limit config read failed for {source}:{scope_key}, using cached: {e}")
                return cached[1]
            logger.warning(f"Rate limit config read failed for {source}:{scope_key}, using default: {e}")
            return RateLimitConfig(source=source, scope=scope_key, requests_per_second=self.default_rps)

        if config is None:
            config = RateLimitConfig(source=source, scope=scope_key, requests_per_second=self.default_rps)
        with self._lock:
            self._cache[cache_key] = (now, config)
        return config

    def ceiling(self, source: str, scope_key: str) -> float:
        return self.get_config(source, scope_key).requests_per_second

    def invalidate(self, source: str, scope_key: str) -> None:
        with self._lock:
            self._cache.pop((source, scope_key), None)

    def try_acquire(self, source: str, scope_key: str) -> RateLimitDecision:
        config = self.get_config(source, scope_key)
        remaining = config.throttle_remaining()
        if remaining > 0:
            return RateLimitDecision.deny(remaining, config.throttle_reason or "throttled")
        return RateLimitDecision.allow()

    def record_request(self, source: str, scope_key: str, duration_ms: int) -> None:
        try:
            self.store.update_rate_limit_usage(source, scope_key, duration_ms)
        except StorageError as e:
            logger.warning(f"Failed to record rate-limit usage for {source}:{scope_key}: {e}")

    def throttle(self, source: str, scope_key: str, seconds: float, reason: str) -> None:
        until = utcnow() + timedelta(seconds=seconds)
        try:
            self.store.set_throttle(source, scope_key, until, reason)
        except StorageError as e:
            logger.error(f"Failed to throttle {source}:{scope_key}: {e}")
            return
        self.invalidate(source, scope_key)


class WindowRateLimiter(RateLimiter):
    """Fast tier: sliding window against a per-key requests-per-second ceiling."""

    def __init__(self, window_store: WindowStore, ceiling: Callable[[str, str], float]):
        self.window_store = window_store
        self.ceiling = ceiling

    def try_acquire(self, source: str, scope_key: str) -> RateLimitDecision:
        capacity, window = window_for(self.ceiling(source, scope_key))
        wait = self.window_store.hit(f"{source}:{scope_key}", capacity, window)
        if wait > 0:
            return RateLimitDecision.deny(wait, "window full")
        return RateLimitDecision.allow()


class DualTierRateLimiter(RateLimiter):
    """Durable throttle check first, then the fast window."""

    def __init__(self, durable: DurableRateLimiter, fast: WindowRateLimiter):
        self.durable = durable
        self.fast = fast

    def try_acquire(self, source: str, scope_key: str) -> RateLimitDecision:
        decision = self.durable.try_acquire(source, scope_key)
        if not decision.allowed:
            logger.info(
                f"{source}:{scope_key} throttled for {decision.wait_seconds:.1f}s ({decision.reason})",
                extra={"source": source, "scope": scope_key}
            )
            return decision
        return self.fast.try_acquire(source, scope_key)

    def record_request(self, source: str, scope_key: str, duration_ms: int) -> None:
        self.durable.record_request(source, scope_key, duration_ms)

    def throttle(self, source: str, scope_key: str, seconds: float, reason: str) -> None:
        self.durable.throttle(source, scope_key, seconds, reason)


def build_rate_limiter(store, redis_url: Optional[str] = None) -> DualTierRateLimiter:
    """Compose the limiter used in production: Redis when configured, else memory."""
    redis_url = redis_url or settings.REDIS_URL
    window_store = RedisWindowStore(redis_url) if redis_url else MemoryWindowStore()
    durable = DurableRateLimiter(store)
    limiter = DualTierRateLimiter(durable, WindowRateLimiter(window_store, durable.ceiling))
    logger.info(
        "Rate limiter initialized",
        extra={
            "fast_tier": "redis" if redis_url else "memory",
            "default_rps": durable.default_rps,
        },
    )
    return limiter
