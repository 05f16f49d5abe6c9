from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from fieldguard.config import Settings
from fieldguard.logging import get_logger
from fieldguard.service.credentials import CredentialVerifier
from fieldguard.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from fieldguard.service.policy import POLICY_VERSION, PolicyIssuer
from fieldguard.service.rate_limit import (
    LOGIN,
    SUPERVISOR_PIN,
    USER_PIN,
    LockoutGuard,
    RateLimiter,
)
from fieldguard.service.supervisor import SupervisorPinService
from fieldguard.service.tokens import ACCESS, OVERRIDE, REFRESH, IssuedToken, TokenService
from fieldguard.storage.models import (
    AttemptType,
    Device,
    PinAttempt,
    Session,
    SessionStatus,
    Team,
    User,
    UserPin,
    new_id,
)

logger = get_logger(__name__)

_GENERIC_LOGIN_FAILURE = "Invalid user code or PIN"


class SessionStore(Protocol):
    def get_device(self, device_id: str) -> Optional[Device]: ...

    def get_team(self, team_id: str) -> Optional[Team]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_code(self, code: str) -> Optional[User]: ...

    def get_user_pin(self, user_id: str) -> Optional[UserPin]: ...

    def touch_device(self, device_id: str, seen_at: datetime) -> None: ...

    def create_session(
        self,
        user_id: str,
        team_id: str,
        device_id: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(self, session_id: str, **fields) -> Optional[Session]: ...

    def extend_session_override(
        self, session_id: str, override_until: datetime
    ) -> Optional[Session]: ...

    def list_device_sessions(self, device_id: str, *, open_only: bool = True) -> List[Session]: ...

    def record_pin_attempt(self, attempt: PinAttempt) -> None: ...


@dataclass
class LoginResult:
    session: Session
    access_token: IssuedToken
    refresh_token: IssuedToken
    policy_version: int = POLICY_VERSION


@dataclass
class OverrideResult:
    override_until: datetime
    token: IssuedToken
    supervisor_pin_id: str
    session_ids: List[str]


@dataclass
class WhoAmI:
    user: User
    session: Session
    team: Optional[Team]
    policy_version: int = POLICY_VERSION


class SessionService:
    """Device-bound user sessions and supervisor emergency overrides.

    Session expiry is authoritative: a row past ``expires_at`` is treated as
    expired whatever its stored ``status`` says. Overrides only ever push
    ``override_until`` forward.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        credentials: CredentialVerifier,
        rate_limiter: RateLimiter,
        lockout: LockoutGuard,
        tokens: TokenService,
        supervisor_pins: SupervisorPinService,
        policy: PolicyIssuer,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.tokens = tokens
        self.supervisor_pins = supervisor_pins
        self.policy = policy
        self._clock = clock
        self._decoy: Optional[tuple[str, str]] = None

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.session_timeout_hours)

    def _record_attempt(
        self,
        subject_id: str,
        attempt_type: AttemptType,
        success: bool,
        *,
        device_id: Optional[str],
        source_ip: Optional[str],
    ) -> None:
        self.store.record_pin_attempt(
            PinAttempt(
                id=new_id(),
                subject_id=subject_id,
                attempt_type=attempt_type,
                success=success,
                device_id=device_id,
                source_ip=source_ip,
                attempted_at=self._now(),
            )
        )

    def _burn_verification(self, pin: str) -> None:
        """Spend one KDF derivation so unknown user codes cost the same as bad PINs."""
        if self._decoy is None:
            self._decoy = self.credentials.hash(new_id())
        self.credentials.verify(pin, *self._decoy)

    def _get_device(self, device_id: str) -> Device:
        device = self.store.get_device(device_id)
        if device is None or not device.is_active:
            raise NotFoundError("Device not found or inactive", error_code="DEVICE_NOT_FOUND")
        return device

    def _load_usable_session(self, session_id: Optional[str]) -> Session:
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            raise AuthenticationError("Session not found", error_code="SESSION_NOT_FOUND")
        status = session.effective_status(self._now())
        if status != SessionStatus.OPEN:
            if status == SessionStatus.EXPIRED and session.status == SessionStatus.OPEN:
                # persist the lazily observed transition for reporting
                self.store.update_session(session.id, status=SessionStatus.EXPIRED)
            raise SessionExpiredError("Session expired or ended")
        return session

    # login / refresh / logout -------------------------------------------
    def login(
        self, device_id: str, user_code: str, pin: str, source_ip: Optional[str] = None
    ) -> LoginResult:
        if not device_id or not user_code or not pin:
            raise ValidationError("device_id, user_code and pin are required")
        device = self._get_device(device_id)
        user = self.store.get_user_by_code(user_code)
        if user is not None and not user.is_active:
            user = None

        lockout_key = LockoutGuard.user_key(user.id, device_id) if user else None
        if lockout_key:
            try:
                self.lockout.ensure_not_locked(lockout_key)
            except AccountLockedError:
                self._record_attempt(
                    user.id, AttemptType.USER_PIN, False, device_id=device_id, source_ip=source_ip
                )
                raise
        self.rate_limiter.check(
            LOGIN, f"device:{device_id}", f"ip:{source_ip}" if source_ip else ""
        )
        if user is not None:
            self.rate_limiter.check(USER_PIN, f"{user.id}:{device_id}")

        verified = False
        reason = "unknown_user"
        if user is not None:
            record = self.store.get_user_pin(user.id)
            if record is None:
                reason = "pin_not_set"
                self._burn_verification(pin)
            elif user.team_id != device.team_id:
                reason = "team_mismatch"
                self._burn_verification(pin)
            else:
                verified = self.credentials.verify(pin, record.pin_hash, record.pin_salt)
                reason = "invalid_pin"
        else:
            self._burn_verification(pin)

        if not verified:
            logger.warning(
                "login_failed", device_id=device_id, reason=reason, source_ip=source_ip
            )
            if user is not None:
                self._record_attempt(
                    user.id, AttemptType.USER_PIN, False, device_id=device_id, source_ip=source_ip
                )
                # raises AccountLockedError once the threshold is crossed
                self.lockout.record_failure(lockout_key)
            raise InvalidCredentialsError(_GENERIC_LOGIN_FAILURE)

        self.lockout.record_success(lockout_key)
        self.rate_limiter.reset(USER_PIN, f"{user.id}:{device_id}")
        now = self._now()
        session = self.store.create_session(
            user.id, user.team_id, device.id, ttl=self.session_ttl, now=now, ip_addr=source_ip
        )
        access = self.tokens.issue(
            ACCESS, subject=user.id, device_id=device.id, session_id=session.id, team_id=user.team_id
        )
        refresh = self.tokens.issue(
            REFRESH, subject=user.id, device_id=device.id, session_id=session.id, team_id=user.team_id
        )
        session = self.store.update_session(
            session.id, token_jti=access.jti, refresh_jti=refresh.jti
        ) or session
        self.store.touch_device(device.id, now)
        self._record_attempt(
            user.id, AttemptType.USER_PIN, True, device_id=device_id, source_ip=source_ip
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            device_id=device.id,
            session_id=session.id,
            source_ip=source_ip,
        )
        return LoginResult(session, access, refresh)

    def refresh(self, refresh_token: str) -> IssuedToken:
        verification = self.tokens.verify(refresh_token, REFRESH)
        if not verification.valid:
            logger.info("refresh_rejected", reason=verification.error)
            raise InvalidTokenError("Invalid or expired refresh token")
        payload = verification.payload
        session = self._load_usable_session(payload.get("x-session-id"))
        if session.refresh_jti and session.refresh_jti != verification.jti:
            raise InvalidTokenError("Invalid or expired refresh token")
        previous_access = session.token_jti
        access = self.tokens.issue(
            ACCESS,
            subject=session.user_id,
            device_id=session.device_id,
            session_id=session.id,
            team_id=session.team_id,
        )
        self.store.update_session(
            session.id, token_jti=access.jti, last_activity_at=self._now()
        )
        if previous_access:
            self.tokens.revoke(previous_access, reason="rotated", revoked_by=session.user_id)
        logger.info("access_token_refreshed", session_id=session.id, user_id=session.user_id)
        return access

    def revoke_session_tokens(self, session_id: str, revoked_by: Optional[str] = None) -> int:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found", error_code="SESSION_NOT_FOUND")
        revoked = 0
        for jti in (session.token_jti, session.refresh_jti):
            if jti:
                self.tokens.revoke(jti, reason="session_ended", revoked_by=revoked_by)
                revoked += 1
        return revoked

    def _end(self, session: Session, ended_by: Optional[str], reason: str) -> Session:
        self.revoke_session_tokens(session.id, revoked_by=ended_by)
        now = self._now()
        updated = self.store.update_session(
            session.id,
            status=SessionStatus.ENDED,
            ended_at=session.ended_at or now,
            last_activity_at=now,
        )
        logger.info("session_ended", session_id=session.id, ended_by=ended_by, reason=reason)
        return updated or session

    def logout(self, session_id: str, user_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found", error_code="SESSION_NOT_FOUND")
        if session.user_id != user_id:
            raise ForbiddenError("Session belongs to another user")
        return self._end(session, user_id, "logout")

    def end_session(self, session_id: str, ended_by: Optional[str] = None) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found", error_code="SESSION_NOT_FOUND")
        return self._end(session, ended_by, "admin")

    # override -----------------------------------------------------------
    def supervisor_override(
        self,
        supervisor_pin: str,
        device_id: str,
        source_ip: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
    ) -> OverrideResult:
        if not supervisor_pin or not device_id:
            raise ValidationError("supervisor_pin and device_id are required")
        self.rate_limiter.check(SUPERVISOR_PIN, f"ip:{source_ip}" if source_ip else f"device:{device_id}")
        device = self._get_device(device_id)
        lockout_key = LockoutGuard.supervisor_key(device.team_id, device.id)
        self.lockout.ensure_not_locked(lockout_key)

        record = self.supervisor_pins.verify(device.team_id, supervisor_pin)
        if record is None:
            self._record_attempt(
                device.team_id,
                AttemptType.SUPERVISOR_PIN,
                False,
                device_id=device.id,
                source_ip=source_ip,
            )
            logger.warning(
                "supervisor_override_failed",
                device_id=device.id,
                team_id=device.team_id,
                source_ip=source_ip,
            )
            self.lockout.record_failure(lockout_key)
            raise InvalidCredentialsError(
                "Invalid supervisor PIN", error_code="INVALID_SUPERVISOR_PIN"
            )
        self.lockout.record_success(lockout_key)

        now = self._now()
        override_until = now + timedelta(minutes=self.settings.supervisor_override_minutes)
        if session_id:
            target = self._load_usable_session(session_id)
            if target.device_id != device.id:
                raise ValidationError("Session is not bound to this device")
            targets = [target]
        else:
            targets = [s for s in self.store.list_device_sessions(device.id) if s.is_usable(now)]
        extended: List[str] = []
        for session in targets:
            if self.store.extend_session_override(session.id, override_until):
                extended.append(session.id)

        token = self.tokens.issue(
            OVERRIDE,
            subject=record.id,
            device_id=device.id,
            session_id=session_id,
            team_id=device.team_id,
            expires_at=override_until,
        )
        self._record_attempt(
            record.id,
            AttemptType.SUPERVISOR_PIN,
            True,
            device_id=device.id,
            source_ip=source_ip,
        )
        logger.info(
            "supervisor_override_granted",
            supervisor_pin_id=record.id,
            device_id=device.id,
            team_id=device.team_id,
            session_ids=extended,
            override_until=override_until.isoformat(),
        )
        return OverrideResult(override_until, token, record.id, extended)

    # lookups ------------------------------------------------------------
    def whoami(self, access_token: str) -> WhoAmI:
        verification = self.tokens.verify(access_token, ACCESS)
        if not verification.valid:
            raise InvalidTokenError("Invalid or expired token")
        payload = verification.payload
        user = self.store.get_user(payload["sub"])
        if user is None or not user.is_active:
            raise AuthenticationError("User not found", error_code="USER_NOT_FOUND")
        session = self._load_usable_session(payload.get("x-session-id"))
        if session.user_id != user.id:
            raise InvalidTokenError("Invalid or expired token")
        return WhoAmI(user, session, self.store.get_team(user.team_id))

    def check_usage_allowed(
        self, token: str, device_id: str, now: Optional[datetime] = None
    ) -> bool:
        """Whether the device may be used now: inside a policy window or overridden.

        Accepts access or override tokens. An override token only relaxes the
        time window; it never reaches anything the access token could not.
        """
        verification = self.tokens.verify_for_override(token)
        if not verification.valid:
            raise InvalidTokenError("Invalid or expired token")
        payload = verification.payload
        if payload.get("x-device-id") != device_id:
            raise ForbiddenError("Token is not bound to this device", error_code="DEVICE_MISMATCH")
        moment = now or self._now()
        device = self._get_device(device_id)
        team = self.store.get_team(device.team_id)
        if self.policy.usage_allowed_at(team, moment):
            return True
        if payload.get("type") == OVERRIDE:
            # The override token expires with the override window it was issued for
            return float(payload["exp"]) > moment.timestamp()
        session_id = payload.get("x-session-id")
        session = self.store.get_session(session_id) if session_id else None
        return bool(
            session is not None
            and session.is_usable(moment)
            and session.override_active(moment)
        )
