from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from fieldguard.config import Settings
from fieldguard.logging import get_logger
from fieldguard.service.errors import InvalidTokenError
from fieldguard.storage.models import JWTRevocation, new_id

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
OVERRIDE = "override"
TOKEN_KINDS = (ACCESS, REFRESH, OVERRIDE)


class RevocationStore(Protocol):
    def add_revocation(self, revocation: JWTRevocation) -> JWTRevocation: ...

    def get_revocation(self, jti: str) -> Optional[JWTRevocation]: ...

    def purge_expired_revocations(self, now: datetime) -> int: ...


@dataclass
class IssuedToken:
    token: str
    jti: str
    kind: str
    expires_at: datetime


@dataclass
class TokenVerification:
    valid: bool
    payload: Optional[Dict[str, Any]] = None
    jti: Optional[str] = None
    error: Optional[str] = None

    def require(self) -> Dict[str, Any]:
        """Return the payload or raise the generic token error."""
        if not self.valid or self.payload is None:
            raise InvalidTokenError("Invalid or expired token")
        return self.payload


class TokenService:
    """HS256 bearer tokens for access, refresh and supervisor override.

    Tokens carry ``sub``, ``aud``, ``iss``, ``iat``, ``exp``, ``jti``, a
    ``type`` discriminator and ``x-device-id``/``x-session-id``/``x-team-id``
    bindings. Verification checks the signature, issuer, audience, expiry,
    type and finally the revocation store.
    """

    def __init__(
        self,
        settings: Settings,
        store: RevocationStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        # Parse once up front so a malformed TTL aborts startup
        for kind in TOKEN_KINDS:
            self.ttl_seconds(kind)

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def ttl_seconds(self, kind: str) -> int:
        if kind == ACCESS:
            return self.settings.access_token_ttl_seconds
        if kind == REFRESH:
            return self.settings.refresh_token_ttl_seconds
        if kind == OVERRIDE:
            return self.settings.override_token_ttl_seconds
        raise ValueError(f"unknown token kind: {kind}")

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Return ``(payload, None)`` for an authentic token or ``(None, reason)``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None, "malformed"
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return None, "malformed"
        alg = header.get("alg") if isinstance(header, dict) else None
        # Pin the algorithm so a forged header cannot pick a weaker one
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None, "invalid_algorithm"
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # non-ASCII signature segment
            signature_ok = False
        if not signature_ok:
            return None, "bad_signature"
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None, "malformed"
        if not isinstance(payload, dict):
            return None, "malformed"
        if payload.get("iss") != self.settings.jwt_issuer:
            return None, "invalid_issuer"
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None, "invalid_audience"
        return payload, None

    def issue(
        self,
        kind: str,
        *,
        subject: str,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
        team_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> IssuedToken:
        """Sign a token of ``kind``; ``expires_at`` can only shorten the TTL."""
        ttl = self.ttl_seconds(kind)
        now = self._now()
        issued_at = int(now.timestamp())
        if expires_at is not None:
            ttl = max(min(ttl, int(expires_at.timestamp()) - issued_at), 1)
        jti = new_id()
        payload: Dict[str, Any] = {
            "sub": subject,
            "aud": self.settings.jwt_audience,
            "iss": self.settings.jwt_issuer,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "jti": jti,
            "type": kind,
        }
        if device_id:
            payload["x-device-id"] = device_id
        if session_id:
            payload["x-session-id"] = session_id
        if team_id:
            payload["x-team-id"] = team_id
        return IssuedToken(
            self._encode_jwt(payload),
            jti,
            kind,
            datetime.fromtimestamp(issued_at + ttl, tz=timezone.utc),
        )

    def _verify_kinds(self, token: str, kinds: tuple[str, ...]) -> TokenVerification:
        payload, error = self._decode_jwt(token)
        if payload is None:
            return TokenVerification(False, error=error)
        jti = payload.get("jti")
        if payload.get("type") not in kinds:
            return TokenVerification(False, jti=jti, error="wrong_type")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return TokenVerification(False, jti=jti, error="malformed")
        if exp_ts <= self._now().timestamp():
            return TokenVerification(False, jti=jti, error="expired")
        if not jti or self.is_revoked(jti):
            return TokenVerification(False, jti=jti, error="revoked")
        return TokenVerification(True, payload=payload, jti=jti)

    def verify(self, token: str, kind: str) -> TokenVerification:
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        return self._verify_kinds(token, (kind,))

    def verify_for_override(self, token: str) -> TokenVerification:
        """Accept an access or override token for override-gated checks."""
        return self._verify_kinds(token, (ACCESS, OVERRIDE))

    def revoke(
        self,
        jti: str,
        *,
        reason: str = "revoked",
        revoked_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> JWTRevocation:
        now = self._now()
        # Without the token's own expiry, keep the row as long as any token can live
        mirror_expiry = expires_at or now + timedelta(
            seconds=max(self.ttl_seconds(kind) for kind in TOKEN_KINDS)
        )
        revocation = self.store.add_revocation(
            JWTRevocation(
                jti=jti,
                revoked_at=now,
                expires_at=mirror_expiry,
                reason=reason,
                revoked_by=revoked_by,
            )
        )
        logger.info("token_revoked", jti=jti, reason=reason, revoked_by=revoked_by)
        return revocation

    def is_revoked(self, jti: str) -> bool:
        return self.store.get_revocation(jti) is not None

    def cleanup_expired_revocations(self) -> int:
        purged = self.store.purge_expired_revocations(self._now())
        if purged:
            logger.info("token_revocations_purged", count=purged)
        return purged
