from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from fieldguard.logging import get_logger
from fieldguard.storage.errors import ConstraintViolation
from fieldguard.storage.models import (
    Action,
    Device,
    JWTRevocation,
    Permission,
    PinAttempt,
    PolicyIssue,
    Resource,
    Role,
    RolePermission,
    Scope,
    Session,
    SupervisorPin,
    Team,
    User,
    UserPin,
    UserRoleAssignment,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process credential store used for tests and single-node development.

    Rows are dataclasses kept in dicts behind one re-entrant lock. Reads hand
    out copies so callers cannot mutate stored rows without going through a
    write method, which mirrors what a database adapter returns.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.teams: Dict[str, Team] = {}
        self.devices: Dict[str, Device] = {}
        self.users: Dict[str, User] = {}
        self.user_pins: Dict[str, UserPin] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[Tuple[str, str], RolePermission] = {}
        self.assignments: Dict[str, UserRoleAssignment] = {}
        self.sessions: Dict[str, Session] = {}
        self.supervisor_pins: Dict[str, SupervisorPin] = {}
        self.policy_issues: List[PolicyIssue] = []
        self.revocations: Dict[str, JWTRevocation] = {}
        self.pin_attempts: List[PinAttempt] = []
        # RLock so multi-row operations can call single-row helpers
        self._data_lock = threading.RLock()

    # teams / devices / users
    def create_team(
        self,
        name: str,
        *,
        timezone: str = "UTC",
        region_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> Team:
        with self._data_lock:
            team = Team(
                id=team_id or new_id(), name=name, timezone=timezone, region_id=region_id
            )
            if team.id in self.teams:
                raise ConstraintViolation("team already exists", {"team_id": team.id})
            self.teams[team.id] = team
            return replace(team)

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._data_lock:
            team = self.teams.get(team_id)
            return replace(team) if team else None

    def create_device(
        self,
        team_id: str,
        *,
        name: str = "",
        device_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Device:
        with self._data_lock:
            if team_id not in self.teams:
                raise ConstraintViolation("device team missing", {"team_id": team_id})
            device = Device(
                id=device_id or new_id(), team_id=team_id, name=name, is_active=is_active
            )
            if device.id in self.devices:
                raise ConstraintViolation("device already exists", {"device_id": device.id})
            self.devices[device.id] = device
            return replace(device)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def touch_device(self, device_id: str, seen_at: datetime) -> None:
        with self._data_lock:
            device = self.devices.get(device_id)
            if device:
                device.last_seen_at = seen_at

    def create_user(
        self,
        team_id: str,
        code: str,
        *,
        display_name: str = "",
        role: Optional[str] = None,
        user_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if team_id not in self.teams:
                raise ConstraintViolation("user team missing", {"team_id": team_id})
            if any(existing.code == code for existing in self.users.values()):
                raise ConstraintViolation("user code already exists", {"field": "code"})
            user = User(
                id=user_id or new_id(),
                team_id=team_id,
                code=code,
                display_name=display_name,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_code(self, code: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.code == code), None)
            return replace(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return replace(user)

    def save_user_pin(self, user_id: str, pin_hash: str, pin_salt: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.user_pins[user_id] = UserPin(
                user_id=user_id, pin_hash=pin_hash, pin_salt=pin_salt
            )

    def get_user_pin(self, user_id: str) -> Optional[UserPin]:
        with self._data_lock:
            record = self.user_pins.get(user_id)
            return replace(record) if record else None

    # roles / permissions
    def create_role(
        self,
        name: str,
        level: int,
        *,
        description: str = "",
        role_id: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            if any(role.name == name for role in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"name": name})
            role = Role(id=role_id or new_id(), name=name, level=level, description=description)
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(
                (replace(role) for role in self.roles.values()), key=lambda r: r.level
            )

    def set_role_active(self, role_id: str, is_active: bool) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            role.is_active = is_active
            return replace(role)

    def ensure_permission(
        self,
        resource: Resource,
        action: Action,
        *,
        scope: Scope = Scope.TEAM,
        conditions: Optional[dict] = None,
        name: Optional[str] = None,
    ) -> Permission:
        perm_name = name or f"{resource.value}_{action.value}"
        with self._data_lock:
            existing = next(
                (p for p in self.permissions.values() if p.name == perm_name), None
            )
            if existing:
                return replace(existing)
            permission = Permission(
                id=new_id(),
                name=perm_name,
                resource=Resource(resource),
                action=Action(action),
                scope=Scope(scope),
                conditions=dict(conditions) if conditions else None,
            )
            self.permissions[permission.id] = permission
            return replace(permission)

    def grant_permission(self, role_id: str, permission_id: str) -> RolePermission:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role missing", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission missing", {"permission_id": permission_id}
                )
            grant = RolePermission(role_id=role_id, permission_id=permission_id)
            self.role_permissions[(role_id, permission_id)] = grant
            return replace(grant)

    def revoke_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            grant = self.role_permissions.get((role_id, permission_id))
            if not grant or not grant.is_active:
                return False
            grant.is_active = False
            return True

    def list_role_permissions(
        self, role_ids: Sequence[str]
    ) -> List[Tuple[str, Permission]]:
        """Active grants for ``role_ids`` as ``(role_id, permission)`` pairs."""
        wanted = set(role_ids)
        with self._data_lock:
            results: List[Tuple[str, Permission]] = []
            for (role_id, permission_id), grant in self.role_permissions.items():
                if role_id not in wanted or not grant.is_active:
                    continue
                permission = self.permissions.get(permission_id)
                if permission and permission.is_active:
                    results.append((role_id, replace(permission)))
            return results

    def create_role_assignment(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        team_id: Optional[str] = None,
        region_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("assignment user missing", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("assignment role missing", {"role_id": role_id})
            now = utcnow()
            for existing in self.assignments.values():
                if (
                    existing.user_id == user_id
                    and existing.role_id == role_id
                    and existing.team_id == team_id
                    and existing.region_id == region_id
                    and existing.is_effective(now)
                ):
                    raise ConstraintViolation(
                        "duplicate active role assignment",
                        {"user_id": user_id, "role_id": role_id},
                    )
            assignment = UserRoleAssignment(
                id=new_id(),
                user_id=user_id,
                role_id=role_id,
                assigned_by=assigned_by,
                team_id=team_id,
                region_id=region_id,
                expires_at=expires_at,
            )
            self.assignments[assignment.id] = assignment
            return replace(assignment)

    def list_role_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        with self._data_lock:
            return [
                replace(a) for a in self.assignments.values() if a.user_id == user_id
            ]

    def get_role_assignment(self, assignment_id: str) -> Optional[UserRoleAssignment]:
        with self._data_lock:
            assignment = self.assignments.get(assignment_id)
            return replace(assignment) if assignment else None

    def deactivate_role_assignment(self, assignment_id: str) -> bool:
        with self._data_lock:
            assignment = self.assignments.get(assignment_id)
            if not assignment or not assignment.is_active:
                return False
            assignment.is_active = False
            return True

    # sessions
    def create_session(
        self,
        user_id: str,
        team_id: str,
        device_id: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            session = Session.new(
                user_id, team_id, device_id, ttl=ttl, now=now, ip_addr=ip_addr
            )
            self.sessions[session.id] = session
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def update_session(self, session_id: str, **fields) -> Optional[Session]:
        """Apply field updates to one session row; the last writer wins."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            for name, value in fields.items():
                if not hasattr(session, name):
                    raise AttributeError(f"Session has no field {name!r}")
                setattr(session, name, value)
            return replace(session)

    def extend_session_override(
        self, session_id: str, override_until: datetime
    ) -> Optional[Session]:
        """Move ``override_until`` forward; an earlier value never replaces a later one."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            if session.override_until is None or session.override_until < override_until:
                session.override_until = override_until
            return replace(session)

    def list_device_sessions(
        self, device_id: str, *, open_only: bool = True
    ) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.device_id == device_id and (not open_only or s.ended_at is None)
            ]

    # supervisor pins
    def _active_team_pins(self, team_id: str) -> List[SupervisorPin]:
        return [
            p for p in self.supervisor_pins.values() if p.team_id == team_id and p.is_active
        ]

    def create_supervisor_pin(
        self,
        team_id: str,
        name: str,
        pin_hash: str,
        pin_salt: str,
        *,
        created_by: Optional[str] = None,
    ) -> SupervisorPin:
        with self._data_lock:
            if team_id not in self.teams:
                raise ConstraintViolation("supervisor pin team missing", {"team_id": team_id})
            if self._active_team_pins(team_id):
                raise ConstraintViolation(
                    "active supervisor pin exists", {"team_id": team_id}
                )
            pin = SupervisorPin(
                id=new_id(),
                team_id=team_id,
                name=name,
                pin_hash=pin_hash,
                pin_salt=pin_salt,
                created_by=created_by,
            )
            self.supervisor_pins[pin.id] = pin
            return replace(pin)

    def get_supervisor_pin(self, pin_id: str) -> Optional[SupervisorPin]:
        with self._data_lock:
            pin = self.supervisor_pins.get(pin_id)
            return replace(pin) if pin else None

    def list_supervisor_pins(
        self, team_id: str, *, active_only: bool = True
    ) -> List[SupervisorPin]:
        with self._data_lock:
            return [
                replace(p)
                for p in self.supervisor_pins.values()
                if p.team_id == team_id and (p.is_active or not active_only)
            ]

    def deactivate_supervisor_pin(self, pin_id: str) -> bool:
        with self._data_lock:
            pin = self.supervisor_pins.get(pin_id)
            if not pin or not pin.is_active:
                return False
            pin.is_active = False
            pin.rotated_at = utcnow()
            return True

    def rotate_supervisor_pin(
        self,
        team_id: str,
        name: str,
        pin_hash: str,
        pin_salt: str,
        *,
        rotated_by: Optional[str] = None,
    ) -> Tuple[SupervisorPin, List[str]]:
        """Deactivate every active PIN for the team and create the replacement.

        Both writes happen under the store lock, so readers never observe the
        team with zero or two active PINs.
        """
        with self._data_lock:
            now = utcnow()
            deactivated: List[str] = []
            for pin in self._active_team_pins(team_id):
                pin.is_active = False
                pin.rotated_at = now
                deactivated.append(pin.id)
            new_pin = self.create_supervisor_pin(
                team_id, name, pin_hash, pin_salt, created_by=rotated_by
            )
            return new_pin, deactivated

    # policy issues
    def record_policy_issue(self, issue: PolicyIssue) -> PolicyIssue:
        with self._data_lock:
            self.policy_issues.append(replace(issue))
            return issue

    def list_policy_issues(self, device_id: str, limit: int = 10) -> List[PolicyIssue]:
        with self._data_lock:
            issues = [replace(i) for i in self.policy_issues if i.device_id == device_id]
        issues.sort(key=lambda i: i.issued_at, reverse=True)
        return issues[:limit]

    # token revocations
    def add_revocation(self, revocation: JWTRevocation) -> JWTRevocation:
        with self._data_lock:
            existing = self.revocations.get(revocation.jti)
            if existing:
                return replace(existing)
            self.revocations[revocation.jti] = replace(revocation)
            return revocation

    def get_revocation(self, jti: str) -> Optional[JWTRevocation]:
        with self._data_lock:
            revocation = self.revocations.get(jti)
            return replace(revocation) if revocation else None

    def purge_expired_revocations(self, now: datetime) -> int:
        with self._data_lock:
            expired = [jti for jti, rev in self.revocations.items() if rev.expires_at <= now]
            for jti in expired:
                self.revocations.pop(jti, None)
            return len(expired)

    # pin attempts
    def record_pin_attempt(self, attempt: PinAttempt) -> None:
        with self._data_lock:
            self.pin_attempts.append(replace(attempt))

    def list_pin_attempts(
        self, subject_id: Optional[str] = None, limit: int = 100
    ) -> List[PinAttempt]:
        with self._data_lock:
            attempts = [
                replace(a)
                for a in self.pin_attempts
                if subject_id is None or a.subject_id == subject_id
            ]
        return attempts[-limit:]
