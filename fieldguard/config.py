from __future__ import annotations

import base64
import binascii
import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fieldguard.logging import get_logger

logger = get_logger(__name__)

_TTL_PATTERN = re.compile(r"^(\d+)([smhd])$")
_TTL_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_ttl(value: str) -> int:
    """Convert a TTL string such as ``15m`` or ``7d`` into seconds.

    Raises:
        ValueError: if the string is not ``<digits><s|m|h|d>`` or is zero.
    """
    match = _TTL_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"invalid TTL format: {value!r} (expected e.g. 15m, 2h, 7d)")
    amount, unit = int(match.group(1)), match.group(2)
    if amount <= 0:
        raise ValueError(f"TTL must be positive: {value!r}")
    return amount * _TTL_UNITS[unit]


def decode_signing_seed(value: str) -> bytes:
    """Return the 32-byte Ed25519 seed carried by a base64 private key string."""
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("policy signing key is not valid base64") from exc
    if len(raw) < 32:
        raise ValueError(
            f"policy signing key must decode to at least 32 bytes, got {len(raw)}"
        )
    return raw[:32]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the access-control and device-policy core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fieldguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/fieldguard", "STATE_DIR")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets.",
    )

    # Bearer tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("fieldguard-backend", "JWT_ISSUER")
    jwt_audience: str = env_field("fieldguard-client", "JWT_AUDIENCE")
    access_token_ttl: str = env_field("15m", "ACCESS_TOKEN_TTL")
    refresh_token_ttl: str = env_field("7d", "REFRESH_TOKEN_TTL")
    override_token_ttl: str = env_field("2h", "OVERRIDE_TOKEN_TTL")

    # Credential KDF
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", description="KiB")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")
    argon2_salt_length: int = env_field(16, "ARGON2_SALT_LENGTH")
    argon2_hash_length: int = env_field(32, "ARGON2_HASH_LENGTH")

    # Per-channel rate limits and lockout
    login_rate_limit_max: int = env_field(5, "LOGIN_RATE_LIMIT_MAX")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    pin_rate_limit_max: int = env_field(10, "PIN_RATE_LIMIT_MAX")
    pin_rate_limit_window_seconds: int = env_field(
        15 * 60, "PIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    supervisor_pin_rate_limit_max: int = env_field(10, "SUPERVISOR_PIN_RATE_LIMIT_MAX")
    supervisor_pin_rate_limit_window_seconds: int = env_field(
        15 * 60, "SUPERVISOR_PIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_base_minutes: int = env_field(5, "LOCKOUT_BASE_MINUTES")
    lockout_max_minutes: int = env_field(60, "LOCKOUT_MAX_MINUTES")

    # Sessions and device policy
    session_timeout_hours: int = env_field(8, "SESSION_TIMEOUT_HOURS")
    supervisor_override_minutes: int = env_field(120, "SUPERVISOR_OVERRIDE_MINUTES")
    policy_grace_minutes: int = env_field(10, "POLICY_GRACE_MINUTES")
    max_clock_skew_sec: int = env_field(180, "MAX_CLOCK_SKEW_SEC")
    max_policy_age_sec: int = env_field(24 * 60 * 60, "MAX_POLICY_AGE_SEC")
    gps_fix_interval_minutes: int = env_field(3, "GPS_FIX_INTERVAL_MINUTES")
    gps_min_displacement_m: int = env_field(50, "GPS_MIN_DISPLACEMENT_M")
    gps_accuracy_threshold_m: int = env_field(50, "GPS_ACCURACY_THRESHOLD_M")
    heartbeat_minutes: int = env_field(10, "HEARTBEAT_MINUTES")
    telemetry_batch_max: int = env_field(50, "TELEMETRY_BATCH_MAX")
    pin_min_length: int = env_field(6, "PIN_MIN_LENGTH")
    supervisor_pin_min_length: int = env_field(4, "SUPERVISOR_PIN_MIN_LENGTH")
    policy_signing_private_key: str | None = env_field(
        None,
        "POLICY_SIGNING_PRIVATE_KEY",
        description="Base64 Ed25519 private key; the first 32 decoded bytes are the seed",
    )
    policy_signing_key_id: str = env_field("policy-signing-key", "POLICY_SIGNING_KEY_ID")

    # Authorization engine
    permission_cache_ttl_seconds: int = env_field(5 * 60, "PERMISSION_CACHE_TTL_SECONDS")
    full_access_roles: list[str] = env_field(["SYSTEM_ADMIN"], "FULL_ACCESS_ROLES")
    cross_team_roles: list[str] = env_field(
        ["NATIONAL_SUPPORT_ADMIN", "AUDITOR"], "CROSS_TEAM_ROLES"
    )
    national_support_role: str = env_field(
        "NATIONAL_SUPPORT_ADMIN", "NATIONAL_SUPPORT_ROLE"
    )
    system_settings_min_level: int = env_field(9, "SYSTEM_SETTINGS_MIN_LEVEL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_ttl(self.access_token_ttl)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_ttl(self.refresh_token_ttl)

    @property
    def override_token_ttl_seconds(self) -> int:
        return parse_ttl(self.override_token_ttl)

    @field_validator("access_token_ttl", "refresh_token_ttl", "override_token_ttl")
    @classmethod
    def _validate_ttl(cls, value: str) -> str:
        parse_ttl(value)
        return value.strip()

    @field_validator(
        "argon2_memory_cost",
        "argon2_time_cost",
        "argon2_parallelism",
        "argon2_salt_length",
        "argon2_hash_length",
        "login_rate_limit_max",
        "login_rate_limit_window_seconds",
        "pin_rate_limit_max",
        "pin_rate_limit_window_seconds",
        "supervisor_pin_rate_limit_max",
        "supervisor_pin_rate_limit_window_seconds",
        "lockout_threshold",
        "lockout_base_minutes",
        "lockout_max_minutes",
        "session_timeout_hours",
        "supervisor_override_minutes",
        "permission_cache_ttl_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("argon2_salt_length")
    @classmethod
    def _validate_salt_length(cls, value: int) -> int:
        # argon2 rejects salts shorter than 8 bytes
        if value < 8:
            raise ValueError("argon2 salt length must be at least 8 bytes")
        return value

    @field_validator("full_access_roles", "cross_team_roles", mode="before")
    @classmethod
    def _split_role_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("policy_signing_private_key")
    @classmethod
    def _validate_signing_key(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        decode_signing_seed(value)
        return value.strip()

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens remain valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/fieldguard"))
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
