from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from fieldguard.logging import get_logger
from fieldguard.service.rate_limit import LockoutState
from fieldguard.storage.errors import StoreUnavailable

logger = get_logger(__name__)


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RedisCache:
    """Redis-backed rate-limit windows and lockout counters shared across workers."""

    # Atomic fixed window: a rejected hit leaves the counter untouched
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'reset')
local count = tonumber(data[1])
local reset = tonumber(data[2])

if count == nil or reset == nil or reset <= now then
  count = 0
  reset = now + window
end

if count >= limit then
  return {0, count, reset}
end

count = count + 1
redis.call('HSET', key, 'count', count, 'reset', reset)
redis.call('PEXPIRE', key, math.max(reset - now, 1))
return {1, count, reset}
"""

    # Failure counter with escalating lock; the key TTL forgets failures
    # max_ms after the last lock ends
    _LOCKOUT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local threshold = tonumber(ARGV[2])
local base_ms = tonumber(ARGV[3])
local max_ms = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'failures', 'locked_until')
local failures = tonumber(data[1]) or 0
local locked_until = tonumber(data[2]) or 0

failures = failures + 1
if failures >= threshold then
  local duration = math.min(base_ms * (2 ^ (failures - threshold)), max_ms)
  locked_until = now + duration
end

redis.call('HSET', key, 'failures', failures, 'locked_until', locked_until)
redis.call('PEXPIRE', key, math.max(locked_until - now, 0) + max_ms)
return {failures, locked_until}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._lockout = self.client.register_script(self._LOCKOUT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on shared counters."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StoreUnavailable("redis unreachable", {"error": str(exc)}) from exc

    @staticmethod
    def _normalize_key(key: str) -> str:
        # Hash user-controlled key parts so delimiters cannot collide
        prefix, _, rest = key.partition(":")
        digest = hashlib.sha256(rest.encode()).hexdigest()[:32]
        return f"fg:{prefix}:{digest}"

    def hit(
        self, key: str, limit: int, window_seconds: int, now: datetime
    ) -> Tuple[bool, int, datetime]:
        try:
            allowed, count, reset = self._fixed_window(
                keys=[self._normalize_key(key)],
                args=[_to_ms(now), limit, window_seconds * 1000],
            )
        except RedisError as exc:
            logger.error("redis_rate_limit_failed", error=str(exc))
            raise StoreUnavailable("rate limit backend unavailable") from exc
        return bool(int(allowed)), int(count), _from_ms(int(reset))

    def peek(self, key: str, now: datetime) -> Tuple[int, Optional[datetime]]:
        try:
            count, reset = self.client.hmget(self._normalize_key(key), "count", "reset")
        except RedisError as exc:
            raise StoreUnavailable("rate limit backend unavailable") from exc
        if count is None or reset is None or int(reset) <= _to_ms(now):
            return 0, None
        return int(count), _from_ms(int(reset))

    def reset(self, key: str) -> None:
        try:
            self.client.delete(self._normalize_key(key))
        except RedisError as exc:
            raise StoreUnavailable("rate limit backend unavailable") from exc

    def get_lockout(self, key: str, now: datetime) -> Optional[LockoutState]:
        redis_key = self._normalize_key(key)
        try:
            failures, locked_until = self.client.hmget(
                redis_key, "failures", "locked_until"
            )
            if failures is None:
                return None
        except RedisError as exc:
            raise StoreUnavailable("lockout backend unavailable") from exc
        locked_ms = int(locked_until or 0)
        return LockoutState(int(failures), _from_ms(locked_ms) if locked_ms else None)

    def record_failure(
        self,
        key: str,
        now: datetime,
        *,
        threshold: int,
        base_minutes: int,
        max_minutes: int,
    ) -> LockoutState:
        try:
            failures, locked_until = self._lockout(
                keys=[self._normalize_key(key)],
                args=[_to_ms(now), threshold, base_minutes * 60_000, max_minutes * 60_000],
            )
        except RedisError as exc:
            logger.error("redis_lockout_failed", error=str(exc))
            raise StoreUnavailable("lockout backend unavailable") from exc
        locked_ms = int(locked_until)
        return LockoutState(int(failures), _from_ms(locked_ms) if locked_ms else None)

    def clear_lockout(self, key: str) -> None:
        self.reset(key)

    def close(self) -> None:
        self.client.close()
