from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from fieldguard.config import get_settings, reset_settings_cache
from fieldguard.logging import get_logger
from fieldguard.service.authorization import AuthorizationEngine
from fieldguard.service.credentials import CredentialVerifier
from fieldguard.service.policy import PolicyIssuer, PolicySigner
from fieldguard.service.rate_limit import LockoutGuard, MemoryRateLimitBackend, RateLimiter
from fieldguard.service.sessions import SessionService
from fieldguard.service.supervisor import SupervisorPinService
from fieldguard.service.tokens import TokenService
from fieldguard.storage.errors import StoreUnavailable
from fieldguard.storage.memory import MemoryStore
from fieldguard.storage.postgres import PostgresStore
from fieldguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        use_memory = self.settings.use_memory_store
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if use_memory
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized", store_type="memory" if use_memory else "postgres"
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if use_memory else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except (StoreUnavailable, RedisError, ValueError) as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and lockouts; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and lockouts "
                    "are per-process only."
                ),
                mode=fallback_mode,
            )
        backend = self.cache or MemoryRateLimitBackend()

        self.credentials = CredentialVerifier(self.settings)
        self.rate_limiter = RateLimiter(self.settings, backend)
        self.lockout = LockoutGuard(self.settings, backend)
        self.tokens = TokenService(self.settings, self.store)
        self.authorization = AuthorizationEngine(self.store, self.settings)
        self.supervisor_pins = SupervisorPinService(self.store, self.settings, self.credentials)
        # An unusable signing key must stop the process before it serves anything
        self.signer = PolicySigner.from_base64(
            self.settings.policy_signing_private_key, self.settings.policy_signing_key_id
        )
        self.policy = PolicyIssuer(self.store, self.settings, self.signer)
        self.sessions = SessionService(
            self.store,
            self.settings,
            credentials=self.credentials,
            rate_limiter=self.rate_limiter,
            lockout=self.lockout,
            tokens=self.tokens,
            supervisor_pins=self.supervisor_pins,
            policy=self.policy,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            policy_key_id=self.signer.key_id,
            access_token_ttl=self.settings.access_token_ttl,
            session_timeout_hours=self.settings.session_timeout_hours,
        )

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before constructing.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except RedisError as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
