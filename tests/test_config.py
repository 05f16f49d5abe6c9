import pytest
from pydantic import ValidationError

from fieldguard.config import Settings, decode_signing_seed, parse_ttl, reset_settings_cache

SECRET = "x" * 40


class TestParseTtl:
    def test_units(self):
        """Seconds, minutes, hours and days all convert to seconds."""
        assert parse_ttl("30s") == 30
        assert parse_ttl("15m") == 900
        assert parse_ttl("2h") == 7200
        assert parse_ttl("7d") == 7 * 86400

    @pytest.mark.parametrize("value", ["15", "m15", "15 minutes", "1w", "", "0m", "-5m"])
    def test_rejects_malformed(self, value):
        """Anything but <digits><s|m|h|d> with a positive amount is refused."""
        with pytest.raises(ValueError):
            parse_ttl(value)


class TestSettingsValidation:
    def test_malformed_ttl_is_fatal(self):
        """A bad token TTL fails settings construction instead of a later request."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, access_token_ttl="fifteen minutes")

    def test_non_positive_kdf_cost_is_fatal(self):
        """KDF costs must be positive."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, argon2_time_cost=0)

    def test_short_salt_is_fatal(self):
        """Salts shorter than argon2's minimum are rejected."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, argon2_salt_length=4)

    def test_short_jwt_secret_is_fatal(self):
        """An explicit JWT secret must be at least 32 characters."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_bad_signing_key_is_fatal(self):
        """Signing key material that is not base64 or too short is refused."""
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, policy_signing_private_key="not base64!!")
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, policy_signing_private_key="AAEC")

    def test_role_lists_split_from_env_strings(self):
        """Comma separated role names become lists."""
        settings = Settings(jwt_secret=SECRET, cross_team_roles="AUDITOR, NATIONAL_SUPPORT_ADMIN")
        assert settings.cross_team_roles == ["AUDITOR", "NATIONAL_SUPPORT_ADMIN"]

    def test_ttl_properties(self):
        """TTL strings are exposed in seconds."""
        settings = Settings(jwt_secret=SECRET, refresh_token_ttl="2d")
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 2 * 86400
        assert settings.override_token_ttl_seconds == 7200


class TestFromEnv:
    def test_environment_overrides_defaults(self, monkeypatch):
        """Values come from the environment under their declared names."""
        monkeypatch.setenv("SESSION_TIMEOUT_HOURS", "4")
        monkeypatch.setenv("LOGIN_RATE_LIMIT_MAX", "3")
        settings = Settings.from_env()
        assert settings.session_timeout_hours == 4
        assert settings.login_rate_limit_max == 3

    def test_bad_env_ttl_refuses_startup(self, monkeypatch):
        """A malformed TTL in the environment raises while loading settings."""
        monkeypatch.setenv("REFRESH_TOKEN_TTL", "7 days")
        reset_settings_cache()
        with pytest.raises(ValidationError):
            Settings.from_env()


class TestSigningSeed:
    def test_first_32_bytes_are_the_seed(self):
        """Longer key material is truncated to the 32-byte seed."""
        seed = decode_signing_seed("AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8=")
        assert seed == bytes(range(32))
