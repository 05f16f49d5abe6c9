"""RedisCache behaviour against a mocked client; no Redis server is needed."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fieldguard.storage.errors import StoreUnavailable
from fieldguard.storage.redis_cache import RedisCache, _to_ms

NOW = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


def create_test_cache() -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://localhost:6379/0"
    cache.client = MagicMock()
    cache._fixed_window = MagicMock()
    cache._lockout = MagicMock()
    return cache


class TestKeys:
    def test_keys_are_hashed_per_prefix(self):
        """User-controlled parts are hashed; the channel prefix stays readable."""
        key = RedisCache._normalize_key("login:device:dev-1")
        assert key.startswith("fg:login:")
        assert "dev-1" not in key
        assert key != RedisCache._normalize_key("login:device:dev-2")


class TestRateLimit:
    def test_hit_decodes_script_result(self):
        """Script replies are converted to (allowed, count, reset_at)."""
        cache = create_test_cache()
        reset = NOW + timedelta(minutes=15)
        cache._fixed_window.return_value = [1, 3, _to_ms(reset)]
        assert cache.hit("login:k", 5, 900, NOW) == (True, 3, reset)

    def test_peek_ignores_elapsed_window(self):
        """A window whose reset time has passed reads as empty."""
        cache = create_test_cache()
        cache.client.hmget.return_value = ["4", str(_to_ms(NOW - timedelta(seconds=1)))]
        assert cache.peek("login:k", NOW) == (0, None)

    def test_redis_errors_become_store_unavailable(self):
        """Backend failures surface as StoreUnavailable."""
        cache = create_test_cache()
        cache._fixed_window.side_effect = RedisConnectionError("down")
        with pytest.raises(StoreUnavailable):
            cache.hit("login:k", 5, 900, NOW)
        cache.client.ping.side_effect = RedisConnectionError("down")
        with pytest.raises(StoreUnavailable):
            cache.verify_connection()


class TestLockout:
    def test_record_failure_returns_lock(self):
        """The lock time from the script is returned as a datetime."""
        cache = create_test_cache()
        locked = NOW + timedelta(minutes=5)
        cache._lockout.return_value = [5, _to_ms(locked)]
        state = cache.record_failure(
            "lock:user", NOW, threshold=5, base_minutes=5, max_minutes=60
        )
        assert state.failures == 5
        assert state.locked_until == locked

    def test_expired_lock_keeps_failures(self):
        """An elapsed lock no longer blocks but its failure count is kept."""
        cache = create_test_cache()
        ended = NOW - timedelta(minutes=1)
        cache.client.hmget.return_value = ["5", str(_to_ms(ended))]
        state = cache.get_lockout("lock:user", NOW)
        assert state.failures == 5
        assert not state.is_locked(NOW)
        cache.client.delete.assert_not_called()

    def test_missing_record(self):
        """No hash means no lockout."""
        cache = create_test_cache()
        cache.client.hmget.return_value = [None, None]
        assert cache.get_lockout("lock:user", NOW) is None
