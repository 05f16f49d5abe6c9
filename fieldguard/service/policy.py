from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from fieldguard.config import Settings, decode_signing_seed
from fieldguard.logging import get_logger
from fieldguard.service.errors import NotFoundError, ServerError
from fieldguard.storage.models import Device, PolicyIssue, Team, new_id

logger = get_logger(__name__)

POLICY_VERSION = 3
PIN_MODES = ("server_verify", "local_verify")
WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

DEFAULT_ALLOWED_WINDOWS: List[Dict[str, Any]] = [
    {"days": ["Mon", "Tue", "Wed", "Thu", "Fri"], "start": "08:00", "end": "19:30"},
    {"days": ["Sat"], "start": "09:00", "end": "15:00"},
]


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":", 1)
    return int(hours) * 60 + int(minutes)


def team_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("team_timezone_invalid", tz=tz_name)
        return ZoneInfo("UTC")


def is_within_windows(windows: List[Dict[str, Any]], local_now: datetime) -> bool:
    """True when ``local_now`` (already in the team timezone) falls in any window."""
    day = WEEKDAYS[local_now.weekday()]
    current = local_now.hour * 60 + local_now.minute
    for window in windows:
        if day not in window.get("days", []):
            continue
        if _minutes(window["start"]) <= current < _minutes(window["end"]):
            return True
    return False


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    raw = base64.urlsafe_b64decode(segment + padding)
    # reject non-canonical encodings so every altered character is detected
    if _encode_segment(raw) != segment:
        raise ValueError("non-canonical base64url segment")
    return raw


@dataclass
class PolicyVerification:
    valid: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class SignedPolicy:
    signed_document: str
    payload: Dict[str, Any]
    issue: PolicyIssue


class PolicySigner:
    """Ed25519 signer producing ``header.payload.signature`` documents."""

    def __init__(self, private_key: Ed25519PrivateKey, key_id: str) -> None:
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self.key_id = key_id

    @classmethod
    def from_base64(cls, value: Optional[str], key_id: str) -> "PolicySigner":
        """Build a signer from base64 key material; raises ``ValueError`` if unusable."""
        if not value:
            raise ValueError("POLICY_SIGNING_PRIVATE_KEY is required to issue policies")
        seed = decode_signing_seed(value)
        return cls(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    def public_key(self) -> str:
        raw = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )
        return base64.b64encode(raw).decode("ascii")

    def sign(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "EdDSA", "typ": "JWT", "kid": self.key_id}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._private_key.sign(signing_input.encode("ascii"))
        return f"{signing_input}.{_encode_segment(signature)}"

    def verify(self, document: str) -> PolicyVerification:
        try:
            header_b64, payload_b64, sig_b64 = document.split(".")
        except (AttributeError, ValueError):
            return PolicyVerification(False, error="malformed")
        try:
            header = json.loads(_decode_segment(header_b64))
            signature = _decode_segment(sig_b64)
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return PolicyVerification(False, error="malformed")
        if not isinstance(header, dict) or header.get("alg") != "EdDSA" or header.get("typ") != "JWT":
            return PolicyVerification(False, error="invalid_header")
        if header.get("kid") not in (None, self.key_id):
            return PolicyVerification(False, error="unknown_key")
        try:
            self._public_key.verify(signature, f"{header_b64}.{payload_b64}".encode("ascii"))
        except (InvalidSignature, UnicodeEncodeError):
            return PolicyVerification(False, error="invalid_signature")
        # only now is the payload trusted enough to parse
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return PolicyVerification(False, error="malformed")
        if not isinstance(payload, dict):
            return PolicyVerification(False, error="malformed")
        return PolicyVerification(True, payload=payload)


class PolicyStore(Protocol):
    def get_device(self, device_id: str) -> Optional[Device]: ...

    def get_team(self, team_id: str) -> Optional[Team]: ...

    def touch_device(self, device_id: str, seen_at: datetime) -> None: ...

    def record_policy_issue(self, issue: PolicyIssue) -> PolicyIssue: ...

    def list_policy_issues(self, device_id: str, limit: int = 10) -> List[PolicyIssue]: ...


def _isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class PolicyIssuer:
    """Builds, signs and records the operating policy for a device.

    Every call produces a fresh payload and a new ``PolicyIssue`` row; nothing
    is cached between issuances.
    """

    def __init__(
        self,
        store: PolicyStore,
        settings: Settings,
        signer: PolicySigner,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        allowed_windows: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer
        self._clock = clock
        self.allowed_windows = allowed_windows or DEFAULT_ALLOWED_WINDOWS

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def public_key(self) -> str:
        return self.signer.public_key()

    def build_payload(self, device: Device, team: Team, now: datetime) -> Dict[str, Any]:
        settings = self.settings
        expires_at = now + timedelta(seconds=settings.max_policy_age_sec)
        return {
            "version": POLICY_VERSION,
            "device_id": device.id,
            "team_id": team.id,
            "tz": team.timezone or "UTC",
            "time_anchor": {
                "server_now_utc": _isoformat(now),
                "max_clock_skew_sec": settings.max_clock_skew_sec,
                "max_policy_age_sec": settings.max_policy_age_sec,
            },
            "session": {
                "allowed_windows": [dict(w, days=list(w["days"])) for w in self.allowed_windows],
                "grace_minutes": settings.policy_grace_minutes,
                "supervisor_override_minutes": settings.supervisor_override_minutes,
            },
            "pin": {
                "mode": "server_verify",
                "min_length": settings.pin_min_length,
                "retry_limit": settings.lockout_threshold,
                "cooldown_seconds": settings.lockout_base_minutes * 60,
            },
            "gps": {
                "active_fix_interval_minutes": settings.gps_fix_interval_minutes,
                "min_displacement_m": settings.gps_min_displacement_m,
                "accuracy_threshold_m": settings.gps_accuracy_threshold_m,
            },
            "telemetry": {
                "heartbeat_minutes": settings.heartbeat_minutes,
                "batch_max": settings.telemetry_batch_max,
            },
            "meta": {
                "issued_at": _isoformat(now),
                "expires_at": _isoformat(expires_at),
            },
        }

    @staticmethod
    def validate_payload(payload: Dict[str, Any]) -> List[str]:
        """Return a list of structural problems; an empty list means signable."""
        errors: List[str] = []

        def number(section: Dict[str, Any], key: str, *, minimum: int = 0) -> None:
            value = section.get(key)
            if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
                errors.append(f"invalid {key}")

        if not isinstance(payload.get("version"), int) or payload.get("version", 0) < 1:
            errors.append("invalid version")
        for key in ("device_id", "team_id", "tz"):
            if not isinstance(payload.get(key), str) or not payload.get(key):
                errors.append(f"invalid {key}")

        anchor = payload.get("time_anchor")
        if not isinstance(anchor, dict):
            errors.append("missing time_anchor")
        else:
            if not isinstance(anchor.get("server_now_utc"), str):
                errors.append("invalid server_now_utc")
            number(anchor, "max_clock_skew_sec")
            number(anchor, "max_policy_age_sec", minimum=1)

        session = payload.get("session")
        if not isinstance(session, dict):
            errors.append("missing session")
        else:
            windows = session.get("allowed_windows")
            if not isinstance(windows, list):
                errors.append("invalid allowed_windows")
            else:
                for window in windows:
                    try:
                        valid_days = window["days"] and all(d in WEEKDAYS for d in window["days"])
                        start, end = _minutes(window["start"]), _minutes(window["end"])
                    except (KeyError, TypeError, ValueError, AttributeError):
                        errors.append("invalid allowed_window")
                        continue
                    if not valid_days or not 0 <= start < end <= 24 * 60:
                        errors.append("invalid allowed_window")
            number(session, "grace_minutes")
            number(session, "supervisor_override_minutes")

        pin = payload.get("pin")
        if not isinstance(pin, dict):
            errors.append("missing pin")
        else:
            if pin.get("mode") not in PIN_MODES:
                errors.append("invalid pin mode")
            number(pin, "min_length", minimum=1)
            number(pin, "retry_limit", minimum=1)
            number(pin, "cooldown_seconds")

        gps = payload.get("gps")
        if not isinstance(gps, dict):
            errors.append("missing gps")
        else:
            number(gps, "active_fix_interval_minutes", minimum=1)
            number(gps, "min_displacement_m")
            number(gps, "accuracy_threshold_m", minimum=1)

        telemetry = payload.get("telemetry")
        if not isinstance(telemetry, dict):
            errors.append("missing telemetry")
        else:
            number(telemetry, "heartbeat_minutes", minimum=1)
            number(telemetry, "batch_max", minimum=1)

        meta = payload.get("meta")
        if not isinstance(meta, dict) or not all(
            isinstance(meta.get(k), str) for k in ("issued_at", "expires_at")
        ):
            errors.append("invalid meta")
        return errors

    def issue_policy(self, device_id: str, source_ip: Optional[str] = None) -> SignedPolicy:
        device = self.store.get_device(device_id)
        if device is None or not device.is_active:
            raise NotFoundError("Device not found or inactive", error_code="DEVICE_NOT_FOUND")
        team = self.store.get_team(device.team_id)
        if team is None:
            raise NotFoundError("Device team not found", error_code="TEAM_NOT_FOUND")

        now = self._now()
        payload = self.build_payload(device, team, now)
        problems = self.validate_payload(payload)
        if problems:
            logger.error("policy_validation_failed", device_id=device_id, errors=problems)
            raise ServerError(
                "Generated policy failed validation",
                error_code="POLICY_VALIDATION_FAILED",
                detail={"errors": problems},
            )
        document = self.signer.sign(payload)
        issue = self.store.record_policy_issue(
            PolicyIssue(
                id=new_id(),
                device_id=device.id,
                team_id=team.id,
                version=POLICY_VERSION,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.settings.max_policy_age_sec),
                kid=self.signer.key_id,
                payload=payload,
                source_ip=source_ip,
            )
        )
        self.store.touch_device(device.id, now)
        logger.info(
            "policy_issued",
            device_id=device.id,
            team_id=team.id,
            policy_issue_id=issue.id,
            version=POLICY_VERSION,
            source_ip=source_ip,
        )
        return SignedPolicy(document, payload, issue)

    def verify(self, document: str) -> PolicyVerification:
        return self.signer.verify(document)

    def recent_issues(self, device_id: str, limit: int = 10) -> List[PolicyIssue]:
        return self.store.list_policy_issues(device_id, limit=limit)

    def usage_allowed_at(self, team: Optional[Team], now: datetime) -> bool:
        """Whether ``now`` falls inside the allowed windows in the team's timezone."""
        local_now = now.astimezone(team_zone(team.timezone if team else None))
        return is_within_windows(self.allowed_windows, local_now)
