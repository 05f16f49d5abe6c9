import base64
import json
from datetime import timedelta

import pytest

from fieldguard.service.errors import InvalidTokenError
from fieldguard.service.tokens import ACCESS, OVERRIDE, REFRESH, TokenService


def _reencode_payload(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{signature}"


class TestIssueAndVerify:
    def test_access_token_claims(self, services):
        """Issued tokens carry the standard claims and device/session bindings."""
        issued = services.tokens.issue(
            ACCESS, subject="user-1", device_id="dev-1", session_id="sess-1", team_id="team-1"
        )
        result = services.tokens.verify(issued.token, ACCESS)
        assert result.valid
        payload = result.payload
        assert payload["sub"] == "user-1"
        assert payload["type"] == ACCESS
        assert payload["x-device-id"] == "dev-1"
        assert payload["x-session-id"] == "sess-1"
        assert payload["x-team-id"] == "team-1"
        assert payload["iss"] == services.settings.jwt_issuer
        assert payload["aud"] == services.settings.jwt_audience
        assert payload["exp"] - payload["iat"] == services.settings.access_token_ttl_seconds
        assert result.jti == issued.jti

    def test_kind_is_enforced(self, services):
        """A refresh token is not accepted where an access token is required."""
        issued = services.tokens.issue(REFRESH, subject="user-1")
        result = services.tokens.verify(issued.token, ACCESS)
        assert not result.valid
        assert result.error == "wrong_type"

    def test_override_check_accepts_access_and_override(self, services):
        """Override-gated checks take access or override tokens, never refresh."""
        tokens = services.tokens
        assert tokens.verify_for_override(tokens.issue(ACCESS, subject="u").token).valid
        assert tokens.verify_for_override(tokens.issue(OVERRIDE, subject="p").token).valid
        assert not tokens.verify_for_override(tokens.issue(REFRESH, subject="u").token).valid

    def test_expired(self, services, clock):
        """Tokens stop verifying once exp passes."""
        issued = services.tokens.issue(ACCESS, subject="user-1")
        clock.advance(seconds=services.settings.access_token_ttl_seconds + 1)
        result = services.tokens.verify(issued.token, ACCESS)
        assert not result.valid
        assert result.error == "expired"

    def test_tampered_payload(self, services):
        """Changing a claim invalidates the signature."""
        issued = services.tokens.issue(ACCESS, subject="user-1")
        forged = _reencode_payload(issued.token, sub="admin")
        result = services.tokens.verify(forged, ACCESS)
        assert not result.valid
        assert result.error == "bad_signature"

    def test_algorithm_is_pinned(self, services):
        """A header naming another algorithm is rejected before signature checks."""
        issued = services.tokens.issue(ACCESS, subject="user-1")
        _, payload, signature = issued.token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        result = services.tokens.verify(f"{header}.{payload}.{signature}", ACCESS)
        assert result.error == "invalid_algorithm"

    def test_other_secret_rejected(self, services, settings, store, clock):
        """Tokens signed with a different secret do not verify."""
        other = TokenService(
            settings.model_copy(update={"jwt_secret": "y" * 48}), store, clock=clock
        )
        issued = other.issue(ACCESS, subject="user-1")
        assert services.tokens.verify(issued.token, ACCESS).error == "bad_signature"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "....."])
    def test_malformed(self, services, token):
        """Garbage never raises, it just fails verification."""
        result = services.tokens.verify(token, ACCESS)
        assert not result.valid

    def test_require_raises_generic_error(self, services):
        """require() turns any failure into the same INVALID_TOKEN error."""
        with pytest.raises(InvalidTokenError):
            services.tokens.verify("a.b.c", ACCESS).require()

    def test_bad_ttl_aborts_construction(self, settings, store):
        """A malformed TTL is caught when the service is built."""
        broken = settings.model_copy(update={"override_token_ttl": "soon"})
        with pytest.raises(ValueError):
            TokenService(broken, store)


class TestRevocation:
    def test_revoked_token_is_invalid(self, services):
        """A cryptographically valid token with a revoked jti fails verification."""
        issued = services.tokens.issue(ACCESS, subject="user-1")
        assert services.tokens.verify(issued.token, ACCESS).valid
        services.tokens.revoke(issued.jti, reason="logout", revoked_by="user-1")
        result = services.tokens.verify(issued.token, ACCESS)
        assert not result.valid
        assert result.error == "revoked"
        assert services.tokens.is_revoked(issued.jti)

    def test_revoke_is_idempotent(self, services):
        """Revoking twice keeps a single row."""
        issued = services.tokens.issue(ACCESS, subject="user-1")
        services.tokens.revoke(issued.jti)
        services.tokens.revoke(issued.jti)
        assert list(services.store.revocations) == [issued.jti]

    def test_cleanup_purges_expired_rows(self, services, clock):
        """Rows past their mirrored expiry are purged, live ones stay."""
        tokens = services.tokens
        tokens.revoke("short", expires_at=clock() + timedelta(minutes=5))
        tokens.revoke("long", expires_at=clock() + timedelta(days=30))
        clock.advance(minutes=10)
        assert tokens.cleanup_expired_revocations() == 1
        assert not tokens.is_revoked("short")
        assert tokens.is_revoked("long")
