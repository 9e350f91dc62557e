"""
Unit tests for the dual-tier rate limiter.

Tests rate limiting functionality including:
- Ceiling to window translation
- The in-memory and Redis sliding windows
- Durable config caching, throttles and storage fallbacks
- Tier composition

Uses mocking to avoid an external Redis dependency.
"""
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from scrapequeue.models import RateLimitConfig, utcnow
from scrapequeue.rate_limiter import (
    DualTierRateLimiter,
    DurableRateLimiter,
    MemoryWindowStore,
    RateLimitDecision,
    RedisWindowStore,
    WindowRateLimiter,
    window_for,
)


# =============================================================================
# Fixtures
# =============================================================================


class MockPipeline:
    """Mock for a Redis pipeline."""

    def __init__(self):
        self.execute_result = [None, 0, []]
        self.calls = []

    def zremrangebyscore(self, key, min_score, max_score):
        self.calls.append(("zremrangebyscore", key))

    def zcard(self, key):
        self.calls.append(("zcard", key))

    def zrange(self, key, start, end, withscores=False):
        self.calls.append(("zrange", key))

    def execute(self):
        return self.execute_result


class MockRedis:
    """Mock for a sync Redis client."""

    def __init__(self):
        self.mock_pipeline = MockPipeline()
        self.zadd_calls = []
        self.expire_calls = []

    def pipeline(self, transaction=True):
        return self.mock_pipeline

    def zadd(self, key, mapping):
        self.zadd_calls.append((key, mapping))

    def expire(self, key, seconds):
        self.expire_calls.append((key, seconds))


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def redis_store(mock_redis):
    window_store = RedisWindowStore(redis_url="redis://localhost:6379/0")
    window_store._redis = mock_redis
    return window_store


# =============================================================================
# Window translation
# =============================================================================


class TestWindowFor:

    def test_whole_ceiling_uses_one_second(self):
        assert window_for(5) == (5, 1.0)

    def test_fractional_ceiling_spreads_single_slot(self):
        assert window_for(0.5) == (1, 2.0)

    def test_deny_rounds_up_to_milliseconds(self):
        decision = RateLimitDecision.deny(0.0001, "window full")
        assert decision.wait_ms == 1
        assert not decision.allowed


# =============================================================================
# Memory window
# =============================================================================


class TestMemoryWindowStore:

    def test_admits_up_to_capacity(self):
        store = MemoryWindowStore()
        assert store.hit("k", 2, 1.0) == 0
        assert store.hit("k", 2, 1.0) == 0
        assert 0 < store.hit("k", 2, 1.0) <= 1.0

    def test_keys_are_independent(self):
        store = MemoryWindowStore()
        store.hit("FL_DBPR:FL", 1, 1.0)
        assert store.hit("TX_TREC:TX", 1, 1.0) == 0

    def test_slot_frees_after_window(self):
        store = MemoryWindowStore()
        store.hit("k", 1, 0.05)
        time.sleep(0.06)
        assert store.hit("k", 1, 0.05) == 0


# =============================================================================
# Redis window
# =============================================================================


class TestRedisWindowStore:

    def test_admits_when_under_capacity(self, redis_store, mock_redis):
        mock_redis.mock_pipeline.execute_result = [None, 0, []]

        assert redis_store.hit("FL_DBPR:FL", 1, 1.0) == 0
        assert len(mock_redis.zadd_calls) == 1
        key, _ = mock_redis.zadd_calls[0]
        assert key == "scrapequeue:ratelimit:FL_DBPR:FL"
        assert mock_redis.expire_calls[0][1] == 2

    def test_full_window_returns_wait_from_oldest(self, redis_store, mock_redis):
        oldest = time.time() - 0.4
        mock_redis.mock_pipeline.execute_result = [None, 1, [(b"x", oldest)]]

        wait = redis_store.hit("FL_DBPR:FL", 1, 1.0)

        assert wait == pytest.approx(0.6, abs=0.05)
        assert mock_redis.zadd_calls == []

    def test_falls_back_to_memory_on_redis_error(self, redis_store):
        broken = MagicMock()
        broken.pipeline.side_effect = redis.ConnectionError("down")
        redis_store._redis = broken

        assert redis_store.hit("k", 1, 1.0) == 0
        assert redis_store.hit("k", 1, 1.0) > 0


# =============================================================================
# Durable tier
# =============================================================================


class TestDurableRateLimiter:

    def test_defaults_when_no_config_row(self, store):
        limiter = DurableRateLimiter(store, default_rps=2.0)
        assert limiter.ceiling("FL_DBPR", "FL") == 2.0
        assert limiter.try_acquire("FL_DBPR", "FL").allowed

    def test_active_throttle_denies_with_remaining(self, store):
        store.rate_limits[("FL_DBPR", "FL")] = RateLimitConfig(
            source="FL_DBPR", scope="FL", throttled=True,
            throttled_until=utcnow() + timedelta(seconds=120), throttle_reason="maintenance",
        )
        decision = DurableRateLimiter(store).try_acquire("FL_DBPR", "FL")

        assert not decision.allowed
        assert 115 < decision.wait_seconds <= 120
        assert decision.reason == "maintenance"

    def test_config_is_cached(self, store):
        store.read_rate_limit_config = MagicMock(return_value=None)
        limiter = DurableRateLimiter(store, cache_ttl=60)

        limiter.ceiling("FL_DBPR", "FL")
        limiter.ceiling("FL_DBPR", "FL")

        assert store.read_rate_limit_config.call_count == 1

    def test_storage_error_uses_cached_config(self, store):
        store.rate_limits[("FL_DBPR", "FL")] = RateLimitConfig(source="FL_DBPR", scope="FL", requests_per_second=4)
        limiter = DurableRateLimiter(store, cache_ttl=0)
        assert limiter.ceiling("FL_DBPR", "FL") == 4

        store.fail("read_rate_limit_config")
        assert limiter.ceiling("FL_DBPR", "FL") == 4

    def test_storage_error_without_cache_uses_default(self, store):
        store.fail("read_rate_limit_config")
        assert DurableRateLimiter(store, default_rps=1.5).ceiling("FL_DBPR", "FL") == 1.5

    def test_throttle_writes_and_invalidates(self, store):
        limiter = DurableRateLimiter(store, cache_ttl=60)
        assert limiter.try_acquire("FL_DBPR", "FL").allowed

        limiter.throttle("FL_DBPR", "FL", 300, "collaborator SITE_UNAVAILABLE")

        assert not limiter.try_acquire("FL_DBPR", "FL").allowed

    def test_record_request_swallows_storage_error(self, store):
        store.fail("update_rate_limit_usage")
        DurableRateLimiter(store).record_request("FL_DBPR", "FL", 120)
        assert ("FL_DBPR", "FL") not in store.rate_limits


# =============================================================================
# Composition
# =============================================================================


class TestDualTierRateLimiter:

    def _limiter(self, store, rps=1.0):
        durable = DurableRateLimiter(store, default_rps=rps, cache_ttl=0)
        return DualTierRateLimiter(durable, WindowRateLimiter(MemoryWindowStore(), durable.ceiling))

    def test_second_request_in_window_waits(self, store):
        limiter = self._limiter(store)

        assert limiter.try_acquire("FL_DBPR", "FL").allowed
        decision = limiter.try_acquire("FL_DBPR", "FL")

        assert not decision.allowed
        assert 0 < decision.wait_seconds <= 1.0

    def test_scopes_are_limited_separately(self, store):
        limiter = self._limiter(store)
        assert limiter.try_acquire("FL_DBPR", "FL").allowed
        assert limiter.try_acquire("TX_TREC", "TX").allowed

    def test_throttle_checked_before_window(self, store):
        limiter = self._limiter(store)
        store.set_throttle("FL_DBPR", "FL", utcnow() + timedelta(seconds=60), "manual")
        fast = MagicMock()
        limiter.fast = fast

        decision = limiter.try_acquire("FL_DBPR", "FL")

        assert not decision.allowed
        fast.try_acquire.assert_not_called()

    def test_raised_ceiling_takes_effect(self, store):
        limiter = self._limiter(store)
        limiter.try_acquire("FL_DBPR", "FL")
        store.update_rate_limit_config("FL_DBPR", "FL", requests_per_second=5)

        assert limiter.try_acquire("FL_DBPR", "FL").allowed
