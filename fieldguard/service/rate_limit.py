from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from fieldguard.config import Settings
from fieldguard.logging import get_logger
from fieldguard.service.errors import AccountLockedError, RateLimitedError

logger = get_logger(__name__)

LOGIN = "login"
USER_PIN = "user_pin"
SUPERVISOR_PIN = "supervisor_pin"


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None


@dataclass
class LockoutState:
    failures: int
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


class RateLimitBackend(Protocol):
    def hit(
        self, key: str, limit: int, window_seconds: int, now: datetime
    ) -> Tuple[bool, int, datetime]: ...

    def peek(self, key: str, now: datetime) -> Tuple[int, Optional[datetime]]: ...

    def reset(self, key: str) -> None: ...

    def get_lockout(self, key: str, now: datetime) -> Optional[LockoutState]: ...

    def record_failure(
        self,
        key: str,
        now: datetime,
        *,
        threshold: int,
        base_minutes: int,
        max_minutes: int,
    ) -> LockoutState: ...

    def clear_lockout(self, key: str) -> None: ...


def lockout_minutes(failures: int, threshold: int, base_minutes: int, max_minutes: int) -> int:
    """Exponential lockout length: base, 2x base, 4x base... capped at the max."""
    if failures < threshold:
        return 0
    return min(base_minutes * (2 ** (failures - threshold)), max_minutes)


class MemoryRateLimitBackend:
    """Fixed-window counters and lockout records kept in process memory.

    A single lock guards both maps so check-and-increment is atomic; the
    windows are per process and reset on restart. A lockout record outlives
    its lock by ``max_minutes``; failures inside that span keep escalating.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, Tuple[LockoutState, datetime]] = {}
        self._lock = threading.Lock()

    def hit(
        self, key: str, limit: int, window_seconds: int, now: datetime
    ) -> Tuple[bool, int, datetime]:
        with self._lock:
            count, reset_at = self._windows.get(key, (0, now))
            if reset_at <= now:
                count, reset_at = 0, now + timedelta(seconds=window_seconds)
            if count >= limit:
                self._windows[key] = (count, reset_at)
                return False, count, reset_at
            count += 1
            self._windows[key] = (count, reset_at)
            return True, count, reset_at

    def peek(self, key: str, now: datetime) -> Tuple[int, Optional[datetime]]:
        with self._lock:
            entry = self._windows.get(key)
            if not entry or entry[1] <= now:
                return 0, None
            return entry

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _live_lockout(self, key: str, now: datetime) -> Optional[LockoutState]:
        # caller holds self._lock
        entry = self._lockouts.get(key)
        if entry is None:
            return None
        state, forget_at = entry
        if forget_at <= now:
            self._lockouts.pop(key, None)
            return None
        return state

    def get_lockout(self, key: str, now: datetime) -> Optional[LockoutState]:
        with self._lock:
            state = self._live_lockout(key, now)
            if state is None:
                return None
            return LockoutState(state.failures, state.locked_until)

    def record_failure(
        self,
        key: str,
        now: datetime,
        *,
        threshold: int,
        base_minutes: int,
        max_minutes: int,
    ) -> LockoutState:
        with self._lock:
            previous = self._live_lockout(key, now)
            state = LockoutState(
                (previous.failures if previous else 0) + 1,
                previous.locked_until if previous else None,
            )
            minutes = lockout_minutes(state.failures, threshold, base_minutes, max_minutes)
            if minutes:
                state.locked_until = now + timedelta(minutes=minutes)
            quiet_from = max(state.locked_until or now, now)
            self._lockouts[key] = (state, quiet_from + timedelta(minutes=max_minutes))
            return LockoutState(state.failures, state.locked_until)

    def clear_lockout(self, key: str) -> None:
        with self._lock:
            self._lockouts.pop(key, None)


def _retry_after(reset_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((reset_at - now).total_seconds()))


class RateLimiter:
    """Per-channel fixed-window limiter for login and PIN attempts."""

    def __init__(
        self,
        settings: Settings,
        backend: Optional[RateLimitBackend] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend: RateLimitBackend = backend or MemoryRateLimitBackend()
        self._clock = clock
        self.channels: Dict[str, Tuple[int, int]] = {
            LOGIN: (settings.login_rate_limit_max, settings.login_rate_limit_window_seconds),
            USER_PIN: (settings.pin_rate_limit_max, settings.pin_rate_limit_window_seconds),
            SUPERVISOR_PIN: (
                settings.supervisor_pin_rate_limit_max,
                settings.supervisor_pin_rate_limit_window_seconds,
            ),
        }

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def _limits(self, channel: str) -> Tuple[int, int]:
        try:
            return self.channels[channel]
        except KeyError:
            raise ValueError(f"unknown rate limit channel: {channel}") from None

    @staticmethod
    def _key(channel: str, key: str) -> str:
        return f"rl:{channel}:{key}"

    def hit(self, channel: str, key: str) -> RateLimitDecision:
        """Count one attempt; a rejected attempt does not consume the window."""
        limit, window = self._limits(channel)
        now = self._now()
        allowed, count, reset_at = self.backend.hit(
            self._key(channel, key), limit, window, now
        )
        if not allowed:
            retry_after = _retry_after(reset_at, now)
            logger.warning(
                "rate_limit_exceeded",
                channel=channel,
                key=key,
                limit=limit,
                retry_after=retry_after,
            )
            return RateLimitDecision(False, 0, reset_at, retry_after)
        return RateLimitDecision(True, max(0, limit - count), reset_at)

    def check(self, channel: str, *keys: str) -> None:
        """Hit every key for the channel and raise if any of them is exhausted.

        All keys are counted even when an earlier one is already over the
        limit, so an attacker cannot rotate one dimension to spare the other.
        """
        denied = [d for d in (self.hit(channel, k) for k in keys if k) if not d.allowed]
        if denied:
            retry_after = max(d.retry_after or 1 for d in denied)
            raise RateLimitedError(
                "Too many attempts, try again later",
                retry_after=retry_after,
                detail={"channel": channel},
            )

    def peek(self, channel: str, key: str) -> RateLimitDecision:
        limit, window = self._limits(channel)
        now = self._now()
        count, reset_at = self.backend.peek(self._key(channel, key), now)
        reset_at = reset_at or now + timedelta(seconds=window)
        allowed = count < limit
        return RateLimitDecision(
            allowed,
            max(0, limit - count),
            reset_at,
            None if allowed else _retry_after(reset_at, now),
        )

    def reset(self, channel: str, key: str) -> None:
        self._limits(channel)
        self.backend.reset(self._key(channel, key))


class LockoutGuard:
    """Escalating lockout after repeated PIN failures for one subject on one device."""

    def __init__(
        self,
        settings: Settings,
        backend: Optional[RateLimitBackend] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend: RateLimitBackend = backend or MemoryRateLimitBackend()
        self._clock = clock
        self.threshold = settings.lockout_threshold
        self.base_minutes = settings.lockout_base_minutes
        self.max_minutes = settings.lockout_max_minutes

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @staticmethod
    def user_key(user_id: str, device_id: str) -> str:
        return f"lockout:user:{user_id}:{device_id}"

    @staticmethod
    def supervisor_key(team_id: str, device_id: str) -> str:
        return f"lockout:supervisor:{team_id}:{device_id}"

    def status(self, key: str) -> Optional[LockoutState]:
        return self.backend.get_lockout(key, self._now())

    def ensure_not_locked(self, key: str) -> None:
        now = self._now()
        state = self.backend.get_lockout(key, now)
        if state and state.is_locked(now):
            raise AccountLockedError(
                "Too many failed attempts, account temporarily locked",
                retry_after=_retry_after(state.locked_until, now),
            )

    def record_failure(self, key: str) -> LockoutState:
        """Count a failed attempt; raises once the failure triggers a lock."""
        now = self._now()
        state = self.backend.record_failure(
            key,
            now,
            threshold=self.threshold,
            base_minutes=self.base_minutes,
            max_minutes=self.max_minutes,
        )
        if state.is_locked(now):
            retry_after = _retry_after(state.locked_until, now)
            logger.warning(
                "pin_lockout_engaged",
                lockout_key=key,
                failures=state.failures,
                retry_after=retry_after,
            )
            raise AccountLockedError(
                "Too many failed attempts, account temporarily locked",
                retry_after=retry_after,
            )
        return state

    def record_success(self, key: str) -> None:
        self.backend.clear_lockout(key)
