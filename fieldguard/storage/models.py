from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Resource(str, Enum):
    TEAMS = "TEAMS"
    USERS = "USERS"
    DEVICES = "DEVICES"
    SUPERVISOR_PINS = "SUPERVISOR_PINS"
    TELEMETRY = "TELEMETRY"
    POLICY = "POLICY"
    AUTH = "AUTH"
    SYSTEM_SETTINGS = "SYSTEM_SETTINGS"
    AUDIT_LOGS = "AUDIT_LOGS"
    SUPPORT_TICKETS = "SUPPORT_TICKETS"
    ORGANIZATION = "ORGANIZATION"


class Action(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LIST = "LIST"
    MANAGE = "MANAGE"
    EXECUTE = "EXECUTE"
    AUDIT = "AUDIT"


class Scope(str, Enum):
    ORGANIZATION = "ORGANIZATION"
    REGION = "REGION"
    TEAM = "TEAM"
    USER = "USER"
    SYSTEM = "SYSTEM"


class SessionStatus(str, Enum):
    OPEN = "open"
    EXPIRED = "expired"
    ENDED = "ended"


class AttemptType(str, Enum):
    USER_PIN = "user_pin"
    SUPERVISOR_PIN = "supervisor_pin"


@dataclass
class Team:
    id: str
    name: str
    timezone: str = "UTC"
    region_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Device:
    id: str
    team_id: str
    name: str = ""
    is_active: bool = True
    last_seen_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    team_id: str
    code: str
    display_name: str = ""
    # Legacy single-role field; effective access comes from role assignments
    role: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserPin:
    user_id: str
    pin_hash: str
    pin_salt: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    level: int
    description: str = ""
    is_active: bool = True


@dataclass
class Permission:
    id: str
    name: str
    resource: Resource
    action: Action
    scope: Scope = Scope.TEAM
    conditions: Dict | None = None
    is_active: bool = True


@dataclass
class RolePermission:
    role_id: str
    permission_id: str
    is_active: bool = True


@dataclass
class UserRoleAssignment:
    id: str
    user_id: str
    role_id: str
    assigned_by: Optional[str] = None
    team_id: Optional[str] = None
    region_id: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass
class Session:
    id: str
    user_id: str
    team_id: str
    device_id: str
    started_at: datetime
    expires_at: datetime
    ended_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.OPEN
    override_until: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    token_jti: Optional[str] = None
    refresh_jti: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        team_id: str,
        device_id: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
        ip_addr: str | None = None,
    ) -> "Session":
        started = now or utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            team_id=team_id,
            device_id=device_id,
            started_at=started,
            expires_at=started + ttl,
            last_activity_at=started,
            ip_addr=ip_addr,
        )

    def effective_status(self, now: datetime) -> SessionStatus:
        """Status derived from timestamps; the stored ``status`` may lag behind."""
        if self.ended_at is not None or self.status == SessionStatus.ENDED:
            return SessionStatus.ENDED
        if self.expires_at <= now:
            return SessionStatus.EXPIRED
        return SessionStatus.OPEN

    def is_usable(self, now: datetime) -> bool:
        return self.effective_status(now) == SessionStatus.OPEN

    def override_active(self, now: datetime) -> bool:
        return self.override_until is not None and self.override_until > now


@dataclass
class SupervisorPin:
    id: str
    team_id: str
    name: str
    pin_hash: str
    pin_salt: str
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    rotated_at: Optional[datetime] = None


@dataclass
class PolicyIssue:
    id: str
    device_id: str
    team_id: str
    version: int
    issued_at: datetime
    expires_at: datetime
    kid: str
    payload: Dict
    source_ip: Optional[str] = None


@dataclass
class JWTRevocation:
    jti: str
    revoked_at: datetime
    expires_at: datetime
    reason: str = "revoked"
    revoked_by: Optional[str] = None


@dataclass
class PinAttempt:
    id: str
    subject_id: str
    attempt_type: AttemptType
    success: bool
    device_id: Optional[str] = None
    source_ip: Optional[str] = None
    attempted_at: datetime = field(default_factory=utcnow)
