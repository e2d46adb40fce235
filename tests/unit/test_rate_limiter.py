"""
Unit tests for the fixed-window rate limiter and its stores.
"""

from unittest.mock import MagicMock

import pytest
import redis

from request_guard.config.settings import RateLimitConfig
from request_guard.security.exceptions import InternalSecurityError, RateLimitExceeded
from request_guard.security.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimitEntry,
    RateLimiter,
    RedisRateLimitStore,
)


WINDOW = 15 * 60


class TestRateLimitEntry:

    @pytest.mark.unit
    def test_open_starts_count_at_one(self):
        entry = RateLimitEntry.open('login:1.2.3.4', now=100.0, window_seconds=60)
        assert entry.count == 1
        assert entry.window_start == 100.0
        assert entry.window_end == 160.0
        assert entry.window_seconds == 60

    @pytest.mark.unit
    def test_incremented_returns_new_entry(self):
        entry = RateLimitEntry.open('k', now=0.0, window_seconds=10)
        bumped = entry.incremented()
        assert bumped.count == 2
        assert entry.count == 1
        assert bumped.window_end == entry.window_end

    @pytest.mark.unit
    def test_expiry_is_inclusive_of_window_end(self):
        entry = RateLimitEntry.open('k', now=0.0, window_seconds=10)
        assert not entry.is_expired(9.999)
        assert entry.is_expired(10.0)


class TestInMemoryRateLimitStore:

    @pytest.mark.unit
    def test_hit_increments_within_window(self, rate_limit_store):
        rate_limit_store.hit('k', WINDOW, now=0.0)
        entry = rate_limit_store.hit('k', WINDOW, now=1.0)
        assert entry.count == 2

    @pytest.mark.unit
    def test_hit_after_expiry_replaces_entry(self, rate_limit_store):
        first = rate_limit_store.hit('k', WINDOW, now=0.0)
        rate_limit_store.hit('k', WINDOW, now=1.0)
        fresh = rate_limit_store.hit('k', WINDOW, now=first.window_end)
        assert fresh.count == 1
        assert fresh.window_start == first.window_end

    @pytest.mark.unit
    def test_reset_forgets_key(self, rate_limit_store):
        rate_limit_store.hit('k', WINDOW, now=0.0)
        rate_limit_store.reset('k')
        assert rate_limit_store.get('k') is None

    @pytest.mark.unit
    def test_sweep_removes_only_stale_entries(self, rate_limit_store):
        rate_limit_store.hit('old', WINDOW, now=0.0)
        rate_limit_store.hit('recent', WINDOW, now=WINDOW)
        # 'old' ended at WINDOW, stale once now - WINDOW passes that point
        removed = rate_limit_store.sweep(now=2 * WINDOW + 1, window_seconds=WINDOW)
        assert removed == 1
        assert rate_limit_store.get('old') is None
        assert rate_limit_store.get('recent') is not None

    @pytest.mark.unit
    def test_expired_but_recent_entry_survives_sweep(self, rate_limit_store):
        rate_limit_store.hit('k', WINDOW, now=0.0)
        assert rate_limit_store.sweep(now=WINDOW + 1, window_seconds=WINDOW) == 0
        assert len(rate_limit_store) == 1

    @pytest.mark.unit
    def test_shard_count_must_be_positive(self):
        with pytest.raises(ValueError):
            InMemoryRateLimitStore(shard_count=0)


class TestRateLimiter:

    @pytest.mark.unit
    def test_quota_table(self, rate_limiter):
        assert rate_limiter.quota_for('default') == 1000
        assert rate_limiter.quota_for('login') == 5
        assert rate_limiter.quota_for('admin') == 500
        assert rate_limiter.quota_for('file-upload') == 10
        assert rate_limiter.quota_for('search') == 200
        assert rate_limiter.quota_for('unknown-category') == 1000

    @pytest.mark.unit
    def test_requests_within_quota_pass(self, rate_limiter):
        for expected in range(1, 6):
            entry = rate_limiter.check('login', '198.51.100.7')
            assert entry.count == expected

    @pytest.mark.unit
    def test_request_over_quota_is_rejected(self, rate_limiter, fake_clock):
        for _ in range(5):
            rate_limiter.check('login', '198.51.100.7')

        fake_clock.advance(60)
        with pytest.raises(RateLimitExceeded) as exc_info:
            rate_limiter.check('login', '198.51.100.7')

        error = exc_info.value
        assert error.http_status == 429
        assert error.retry_after_seconds == WINDOW - 60
        assert error.metadata['event_type'] == 'RATE_LIMIT_EXCEEDED'
        assert error.metadata['limit'] == 5

    @pytest.mark.unit
    def test_rejected_requests_still_count(self, rate_limiter, rate_limit_store):
        for _ in range(5):
            rate_limiter.check('login', 'ip')
        for _ in range(3):
            with pytest.raises(RateLimitExceeded):
                rate_limiter.check('login', 'ip')
        assert rate_limit_store.get('login:ip').count == 8

    @pytest.mark.unit
    def test_retry_after_rounds_up(self, rate_limiter, fake_clock):
        for _ in range(5):
            rate_limiter.check('login', 'ip')
        fake_clock.advance(0.5)
        with pytest.raises(RateLimitExceeded) as exc_info:
            rate_limiter.check('login', 'ip')
        assert exc_info.value.retry_after_seconds == WINDOW

    @pytest.mark.unit
    def test_new_window_after_expiry(self, rate_limiter, fake_clock):
        for _ in range(5):
            rate_limiter.check('login', 'ip')
        fake_clock.advance(WINDOW)
        entry = rate_limiter.check('login', 'ip')
        assert entry.count == 1

    @pytest.mark.unit
    def test_categories_and_identities_are_independent(self, rate_limiter):
        for _ in range(5):
            rate_limiter.check('login', 'ip-a')
        rate_limiter.check('login', 'ip-b')
        rate_limiter.check('search', 'ip-a')

    @pytest.mark.unit
    def test_reset_clears_counter(self, rate_limiter):
        for _ in range(5):
            rate_limiter.check('login', 'ip')
        rate_limiter.reset('login', 'ip')
        assert rate_limiter.check('login', 'ip').count == 1

    @pytest.mark.unit
    def test_check_sweeps_stale_entries(self, rate_limiter, rate_limit_store, fake_clock):
        rate_limiter.check('search', 'stale-ip')
        fake_clock.advance(2 * WINDOW + 1)
        rate_limiter.check('search', 'fresh-ip')
        assert rate_limit_store.get('search:stale-ip') is None

    @pytest.mark.unit
    def test_configured_overrides(self, fake_clock):
        config = RateLimitConfig(window_seconds=60, default_limit=2, category_limits={'login': 1})
        limiter = RateLimiter(config=config, clock=fake_clock)
        limiter.check('login', 'ip')
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check('login', 'ip')
        assert exc_info.value.retry_after_seconds == 60


class TestRedisRateLimitStore:
    """Redis store behaviour against a mocked client pipeline."""

    def _client(self, execute_result):
        client = MagicMock(spec=redis.Redis)
        pipe = MagicMock()
        pipe.execute.return_value = execute_result
        client.pipeline.return_value = pipe
        return client, pipe

    @pytest.mark.unit
    def test_hit_uses_atomic_transaction(self):
        client, pipe = self._client([True, 1, WINDOW * 1000])
        store = RedisRateLimitStore(client, key_prefix='rg:')

        entry = store.hit('login:ip', WINDOW, now=1000.0)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with('rg:login:ip', 0, px=WINDOW * 1000, nx=True)
        pipe.incr.assert_called_once_with('rg:login:ip')
        pipe.pttl.assert_called_once_with('rg:login:ip')
        assert entry.count == 1
        assert entry.window_end == 1000.0 + WINDOW
        assert entry.key == 'login:ip'

    @pytest.mark.unit
    def test_hit_reports_remaining_ttl(self):
        client, _ = self._client([None, 7, 30_000])
        store = RedisRateLimitStore(client)
        entry = store.hit('login:ip', WINDOW, now=500.0)
        assert entry.count == 7
        assert entry.window_end == 530.0

    @pytest.mark.unit
    def test_missing_ttl_reopens_window(self):
        client, _ = self._client([None, 3, -1])
        store = RedisRateLimitStore(client, key_prefix='rg:')
        entry = store.hit('k', 60, now=0.0)
        client.pexpire.assert_called_once_with('rg:k', 60_000)
        assert entry.window_end == 60.0

    @pytest.mark.unit
    def test_redis_failure_fails_closed(self):
        client, pipe = self._client(None)
        pipe.execute.side_effect = redis.ConnectionError("connection refused")
        store = RedisRateLimitStore(client)
        with pytest.raises(InternalSecurityError):
            store.hit('k', 60, now=0.0)

    @pytest.mark.unit
    def test_limiter_over_redis_store(self, fake_clock):
        client, _ = self._client([None, 6, 10_000])
        limiter = RateLimiter(store=RedisRateLimitStore(client), config=RateLimitConfig(), clock=fake_clock)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check('login', 'ip')
        assert exc_info.value.retry_after_seconds == 10

    @pytest.mark.unit
    def test_reset_deletes_key(self):
        client, _ = self._client(None)
        RedisRateLimitStore(client, key_prefix='rg:').reset('login:ip')
        client.delete.assert_called_once_with('rg:login:ip')

    @pytest.mark.unit
    def test_reset_failure_fails_closed(self):
        client, _ = self._client(None)
        client.delete.side_effect = redis.ConnectionError("connection refused")
        with pytest.raises(InternalSecurityError) as exc_info:
            RedisRateLimitStore(client).reset('login:ip')
        assert exc_info.value.metadata['store'] == 'redis'
        assert isinstance(exc_info.value.__cause__, redis.ConnectionError)

    @pytest.mark.unit
    def test_get_failure_fails_closed(self):
        client, pipe = self._client(None)
        pipe.execute.side_effect = redis.TimeoutError("timed out")
        with pytest.raises(InternalSecurityError):
            RedisRateLimitStore(client).get('login:ip')

    @pytest.mark.unit
    def test_limiter_reset_over_unavailable_store(self, fake_clock):
        client, _ = self._client(None)
        client.delete.side_effect = redis.ConnectionError("connection refused")
        limiter = RateLimiter(store=RedisRateLimitStore(client), config=RateLimitConfig(), clock=fake_clock)
        with pytest.raises(InternalSecurityError):
            limiter.reset('login', 'ip')
