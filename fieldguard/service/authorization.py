from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from fieldguard.config import Settings
from fieldguard.logging import get_logger, log_authorization_decision
from fieldguard.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from fieldguard.service.rbac_seed import DEFAULT_ROLE_INHERITANCE
from fieldguard.storage.errors import ConstraintViolation, StoreUnavailable
from fieldguard.storage.models import (
    Action,
    Permission,
    Resource,
    Role,
    Scope,
    Team,
    User,
    UserRoleAssignment,
)

logger = get_logger(__name__)

# Resources elevated cross-team roles may read outside their own team
OPERATIONAL_RESOURCES = frozenset(
    {
        Resource.TEAMS,
        Resource.USERS,
        Resource.DEVICES,
        Resource.TELEMETRY,
        Resource.POLICY,
        Resource.SUPPORT_TICKETS,
        Resource.AUDIT_LOGS,
    }
)
READ_ACTIONS = frozenset({Action.READ, Action.LIST})


class RoleStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_team(self, team_id: str) -> Optional[Team]: ...

    def list_roles(self) -> List[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_role_assignments(self, user_id: str) -> List[UserRoleAssignment]: ...

    def get_role_assignment(self, assignment_id: str) -> Optional[UserRoleAssignment]: ...

    def list_role_permissions(self, role_ids: Sequence[str]) -> List[Tuple[str, Permission]]: ...

    def create_role_assignment(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        team_id: Optional[str] = None,
        region_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment: ...

    def deactivate_role_assignment(self, assignment_id: str) -> bool: ...


@dataclass(frozen=True)
class PermissionContext:
    ip_address: Optional[str] = None
    team_id: Optional[str] = None
    region_id: Optional[str] = None
    device_id: Optional[str] = None
    request_id: Optional[str] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class ResourceDescriptor:
    type: Resource
    team_id: Optional[str] = None
    region_id: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class RoleSnapshot:
    role_id: str
    name: str
    level: int
    team_id: Optional[str] = None
    region_id: Optional[str] = None
    inherited: bool = False


@dataclass(frozen=True)
class ResolvedPermission:
    permission_id: str
    name: str
    resource: Resource
    action: Action
    scope: Scope
    role_id: str
    role_name: str
    conditions: Optional[dict] = None
    inherited: bool = False


@dataclass(frozen=True)
class Grant:
    role_id: str
    role_name: str
    permission_id: str


@dataclass
class EffectivePermissions:
    user_id: str
    permissions: List[ResolvedPermission]
    roles: List[RoleSnapshot]
    computed_at: datetime
    expires_at: datetime

    @property
    def direct_roles(self) -> List[RoleSnapshot]:
        return [role for role in self.roles if not role.inherited]

    def role_names(self, *, include_inherited: bool = False) -> Set[str]:
        return {r.name for r in self.roles if include_inherited or not r.inherited}


@dataclass
class PermissionDecision:
    allowed: bool
    reason: Optional[str] = None
    granted_by: List[Grant] = field(default_factory=list)
    evaluation_time_ms: float = 0.0
    cache_hit: bool = False


@dataclass
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None


def _parse_hhmm(value: str) -> int:
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


class AuthorizationEngine:
    """Role-based permission resolution with team and region boundaries.

    Effective permissions are a pure function of a user's active assignments,
    the role inheritance map and the active role grants. The result is
    memoised per user for ``permission_cache_ttl_seconds``; the memo is
    disposable and every role change invalidates it.

    Concurrent misses for the same user share one computation through a
    per-user lock, while lookups for other users never wait on it.
    """

    def __init__(
        self,
        store: RoleStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        role_inheritance: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self.cache_ttl = timedelta(seconds=settings.permission_cache_ttl_seconds)
        self.full_access_roles = frozenset(settings.full_access_roles)
        self.cross_team_roles = frozenset(settings.cross_team_roles)
        self.national_support_role = settings.national_support_role
        self.system_settings_min_level = settings.system_settings_min_level
        self.role_inheritance = (
            DEFAULT_ROLE_INHERITANCE if role_inheritance is None else role_inheritance
        )
        self._cache: Dict[str, EffectivePermissions] = {}
        self._generations: Dict[str, int] = {}
        self._compute_locks: Dict[str, threading.Lock] = {}
        # guards the three dicts above; never held while computing
        self._cache_lock = threading.Lock()
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    # cache ----------------------------------------------------------------
    def _cached(self, user_id: str, now: datetime) -> Optional[EffectivePermissions]:
        with self._cache_lock:
            entry = self._cache.get(user_id)
        if entry is not None and entry.expires_at > now:
            return entry
        return None

    def _compute_lock(self, user_id: str) -> threading.Lock:
        with self._cache_lock:
            lock = self._compute_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._compute_locks[user_id] = lock
            return lock

    def _get_or_compute(self, user_id: str) -> Tuple[EffectivePermissions, bool]:
        entry = self._cached(user_id, self._now())
        if entry is not None:
            return entry, True
        with self._compute_lock(user_id):
            # another worker may have filled the entry while we waited
            entry = self._cached(user_id, self._now())
            if entry is not None:
                return entry, True
            with self._cache_lock:
                generation = self._generations.get(user_id, 0)
            entry = self._compute(user_id)
            with self._cache_lock:
                # skip the store if the user was invalidated mid-computation
                if self._generations.get(user_id, 0) == generation:
                    self._cache[user_id] = entry
            return entry, False

    def invalidate_permission_cache(self, user_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
        self.logger.info("permission_cache_invalidated", user_id=user_id)

    def invalidate_all(self) -> None:
        with self._cache_lock:
            for user_id in list(self._cache):
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._cache.clear()

    def cleanup_expired_cache(self) -> int:
        """Drop expired entries and idle compute locks; returns entries removed."""
        now = self._now()
        with self._cache_lock:
            expired = [uid for uid, entry in self._cache.items() if entry.expires_at <= now]
            for user_id in expired:
                self._cache.pop(user_id, None)
            for user_id in list(self._compute_locks):
                if user_id not in self._cache and not self._compute_locks[user_id].locked():
                    self._compute_locks.pop(user_id, None)
        if expired:
            self.logger.debug("permission_cache_cleanup", removed=len(expired))
        return len(expired)

    # computation ----------------------------------------------------------
    def _expand_inherited(
        self, direct: Iterable[Role], roles_by_name: Dict[str, Role]
    ) -> List[Role]:
        """Breadth-first walk of the inheritance map, downwards in level only."""
        seen = {role.name for role in direct}
        queue = list(direct)
        inherited: List[Role] = []
        while queue:
            child = queue.pop(0)
            for parent_name in self.role_inheritance.get(child.name, []):
                if parent_name in seen:
                    continue
                parent = roles_by_name.get(parent_name)
                if parent is None or not parent.is_active:
                    continue
                if parent.level >= child.level:
                    self.logger.warning(
                        "role_inheritance_ignored", role=child.name, parent=parent_name
                    )
                    continue
                seen.add(parent_name)
                inherited.append(parent)
                queue.append(parent)
        return inherited

    def _compute(self, user_id: str) -> EffectivePermissions:
        now = self._now()
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        snapshots: List[RoleSnapshot] = []
        permissions: List[ResolvedPermission] = []
        if user.is_active:
            roles = self.store.list_roles()
            roles_by_id = {role.id: role for role in roles}
            roles_by_name = {role.name: role for role in roles}
            direct: List[Role] = []
            for assignment in self.store.list_role_assignments(user_id):
                if not assignment.is_effective(now):
                    continue
                role = roles_by_id.get(assignment.role_id)
                if role is None or not role.is_active:
                    continue
                snapshots.append(
                    RoleSnapshot(
                        role.id,
                        role.name,
                        role.level,
                        team_id=assignment.team_id,
                        region_id=assignment.region_id,
                    )
                )
                if role not in direct:
                    direct.append(role)
            direct.sort(key=lambda r: r.level, reverse=True)
            inherited = self._expand_inherited(direct, roles_by_name)
            snapshots.extend(
                RoleSnapshot(r.id, r.name, r.level, inherited=True) for r in inherited
            )
            permissions = self._resolve_grants(direct, inherited)
        return EffectivePermissions(
            user_id=user_id,
            permissions=permissions,
            roles=snapshots,
            computed_at=now,
            expires_at=now + self.cache_ttl,
        )

    def _resolve_grants(
        self, direct: List[Role], inherited: List[Role]
    ) -> List[ResolvedPermission]:
        ordered = direct + inherited
        if not ordered:
            return []
        inherited_ids = {role.id for role in inherited}
        grants_by_role: Dict[str, List[Permission]] = {}
        for role_id, permission in self.store.list_role_permissions([r.id for r in ordered]):
            grants_by_role.setdefault(role_id, []).append(permission)
        resolved: List[ResolvedPermission] = []
        seen: Set[Tuple[Resource, Action, Scope]] = set()
        for role in ordered:
            for permission in grants_by_role.get(role.id, []):
                key = (permission.resource, permission.action, permission.scope)
                if key in seen:
                    continue
                seen.add(key)
                resolved.append(
                    ResolvedPermission(
                        permission_id=permission.id,
                        name=permission.name,
                        resource=permission.resource,
                        action=permission.action,
                        scope=permission.scope,
                        role_id=role.id,
                        role_name=role.name,
                        conditions=permission.conditions,
                        inherited=role.id in inherited_ids,
                    )
                )
        return resolved

    def compute_effective_permissions(self, user_id: str) -> EffectivePermissions:
        entry, _ = self._get_or_compute(user_id)
        return entry

    # evaluation -----------------------------------------------------------
    def _conditions_met(
        self, conditions: Optional[dict], context: Optional[PermissionContext]
    ) -> bool:
        if not conditions:
            return True
        now = (context.now if context and context.now else self._now()).astimezone(
            timezone.utc
        )
        window = conditions.get("time_window")
        if window:
            current = now.hour * 60 + now.minute
            start = _parse_hhmm(window.get("start", "00:00"))
            end = _parse_hhmm(window.get("end", "23:59"))
            if start <= end:
                inside = start <= current <= end
            else:
                inside = current >= start or current <= end
            if not inside:
                return False
        days = conditions.get("allowed_days")
        if days:
            if now.strftime("%A").upper() not in {str(d).upper() for d in days}:
                return False
        allowed_ips = conditions.get("allowed_ips")
        if allowed_ips:
            if not context or not context.ip_address:
                return False
            try:
                address = ipaddress.ip_address(context.ip_address)
            except ValueError:
                return False
            if not any(
                address in ipaddress.ip_network(entry, strict=False) for entry in allowed_ips
            ):
                return False
        return True

    def _evaluate(
        self,
        effective: EffectivePermissions,
        resource: Resource,
        action: Action,
        context: Optional[PermissionContext],
    ) -> PermissionDecision:
        if not effective.permissions:
            return PermissionDecision(False, "NO_PERMISSIONS")
        exact = [p for p in effective.permissions if p.resource == resource and p.action == action]
        manage = [
            p
            for p in effective.permissions
            if p.resource == resource and p.action == Action.MANAGE and action != Action.MANAGE
        ]
        candidates = exact + manage
        if not candidates:
            return PermissionDecision(False, "NO_PERMISSION")
        for permission in candidates:
            if self._conditions_met(permission.conditions, context):
                grant = Grant(permission.role_id, permission.role_name, permission.permission_id)
                return PermissionDecision(True, granted_by=[grant])
        return PermissionDecision(False, "CONDITIONS_NOT_MET")

    def _check_system_settings(
        self,
        effective: EffectivePermissions,
        action: Action,
        context: Optional[PermissionContext],
    ) -> PermissionDecision:
        # national support is refused even alongside a qualifying role
        if self.national_support_role in effective.role_names():
            return PermissionDecision(False, "SYSTEM_SETTINGS_ACCESS_DENIED_NATIONAL_SUPPORT")
        if not any(
            role.level >= self.system_settings_min_level for role in effective.direct_roles
        ):
            return PermissionDecision(False, "SYSTEM_SETTINGS_ACCESS_DENIED")
        return self._evaluate(effective, Resource.SYSTEM_SETTINGS, action, context)

    @staticmethod
    def _coerce(resource, action) -> Tuple[Resource, Action]:
        try:
            return Resource(resource), Action(action)
        except ValueError as exc:
            raise ValidationError(
                "Unknown resource or action", detail={"error": str(exc)}
            ) from exc

    def check_permission(
        self,
        user_id: str,
        resource: Resource | str,
        action: Action | str,
        context: Optional[PermissionContext] = None,
    ) -> PermissionDecision:
        resource, action = self._coerce(resource, action)
        started = time.perf_counter()
        try:
            effective, cache_hit = self._get_or_compute(user_id)
            if resource == Resource.SYSTEM_SETTINGS:
                decision = self._check_system_settings(effective, action, context)
            else:
                decision = self._evaluate(effective, resource, action, context)
            decision.cache_hit = cache_hit
        except NotFoundError:
            decision = PermissionDecision(False, "USER_NOT_FOUND")
        except StoreUnavailable as exc:
            self.logger.error(
                "permission_check_failed", user_id=user_id, error=str(exc)
            )
            decision = PermissionDecision(False, "SYSTEM_ERROR")
        decision.evaluation_time_ms = (time.perf_counter() - started) * 1000
        log_authorization_decision(
            decision,
            user_id=user_id,
            resource=resource.value,
            action=action.value,
            logger=self.logger,
        )
        return decision

    def check_contextual_access(
        self,
        user_id: str,
        target: ResourceDescriptor,
        action: Action | str,
        context: Optional[PermissionContext] = None,
    ) -> AccessDecision:
        resource, action = self._coerce(target.type, action)
        try:
            effective, _ = self._get_or_compute(user_id)
            if not effective.direct_roles:
                return AccessDecision(False, "NO_ROLES")
            user = self.store.get_user(user_id)
            if user is None:
                return AccessDecision(False, "USER_NOT_FOUND")
            role_names = effective.role_names()
            user_teams = {user.team_id} | {
                r.team_id for r in effective.direct_roles if r.team_id
            }
            same_team = target.team_id is None or target.team_id in user_teams

            if resource == Resource.SYSTEM_SETTINGS:
                if self.national_support_role in role_names:
                    return AccessDecision(False, "SYSTEM_SETTINGS_ACCESS_DENIED_NATIONAL_SUPPORT")
                if not same_team:
                    return AccessDecision(False, "SYSTEM_SETTINGS_ACCESS_DENIED")

            if role_names & self.full_access_roles:
                return AccessDecision(True)

            cross_team = role_names & self.cross_team_roles
            if not same_team:
                if cross_team and resource in OPERATIONAL_RESOURCES and action in READ_ACTIONS:
                    if self.national_support_role in cross_team:
                        return AccessDecision(True, "NATIONAL_SUPPORT_ADMIN_CROSS_TEAM_ACCESS")
                    return AccessDecision(True, "CROSS_TEAM_READ_ACCESS")
                self.logger.warning(
                    "team_boundary_violation",
                    user_id=user_id,
                    user_team_id=user.team_id,
                    target_team_id=target.team_id,
                    resource=resource.value,
                    action=action.value,
                )
                return AccessDecision(False, "TEAM_BOUNDARY_VIOLATION")

            if target.region_id and not cross_team:
                user_regions = {r.region_id for r in effective.direct_roles if r.region_id}
                team = self.store.get_team(user.team_id)
                if team is not None and team.region_id:
                    user_regions.add(team.region_id)
                if target.region_id not in user_regions:
                    self.logger.warning(
                        "region_boundary_violation",
                        user_id=user_id,
                        target_region_id=target.region_id,
                        resource=resource.value,
                    )
                    return AccessDecision(False, "REGION_BOUNDARY_VIOLATION")
            return AccessDecision(True)
        except NotFoundError:
            return AccessDecision(False, "USER_NOT_FOUND")
        except StoreUnavailable as exc:
            self.logger.error("contextual_check_failed", user_id=user_id, error=str(exc))
            return AccessDecision(False, "CONTEXT_CHECK_ERROR")

    def require_permission(
        self,
        user_id: str,
        resource: Resource | str,
        action: Action | str,
        *,
        target: Optional[ResourceDescriptor] = None,
        context: Optional[PermissionContext] = None,
    ) -> PermissionDecision:
        """Check a permission, plus the resource boundary when ``target`` is given.

        Raises ``ForbiddenError`` carrying the precise denial reason, or
        ``ServiceUnavailableError`` when the store could not be read.
        """
        decision = self.check_permission(user_id, resource, action, context)
        if not decision.allowed:
            self._raise_denial(decision.reason)
        if target is not None:
            access = self.check_contextual_access(user_id, target, action, context)
            if not access.allowed:
                self._raise_denial(access.reason)
        return decision

    @staticmethod
    def _raise_denial(reason: Optional[str]) -> None:
        if reason in ("SYSTEM_ERROR", "CONTEXT_CHECK_ERROR"):
            raise ServiceUnavailableError("Authorization backend unavailable")
        raise ForbiddenError(
            "Insufficient permissions", error_code=reason or "INSUFFICIENT_PERMISSIONS"
        )

    # role queries ---------------------------------------------------------
    def has_any_role(self, user_id: str, role_names: Iterable[str]) -> bool:
        try:
            effective, _ = self._get_or_compute(user_id)
        except NotFoundError:
            return False
        return bool(effective.role_names() & set(role_names))

    def get_user_highest_role_level(self, user_id: str) -> int:
        try:
            effective, _ = self._get_or_compute(user_id)
        except NotFoundError:
            return 0
        return max((role.level for role in effective.direct_roles), default=0)

    def can_role_manage(self, role_name: str, target_role_name: str) -> bool:
        """A role may manage another only when its level is strictly higher."""
        role = self.store.get_role_by_name(role_name)
        target = self.store.get_role_by_name(target_role_name)
        if role is None or target is None or not role.is_active:
            return False
        return role.level > target.level

    def get_inherited_permissions(
        self, user_id: str, resource: Resource | str | None = None
    ) -> List[ResolvedPermission]:
        effective, _ = self._get_or_compute(user_id)
        wanted = Resource(resource) if resource is not None else None
        return [
            p
            for p in effective.permissions
            if p.inherited and (wanted is None or p.resource == wanted)
        ]

    # role administration --------------------------------------------------
    def assign_role(
        self,
        user_id: str,
        role_name: str,
        assigned_by: Optional[str] = None,
        *,
        team_id: Optional[str] = None,
        region_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        role = self.store.get_role_by_name(role_name)
        if role is None or not role.is_active:
            raise NotFoundError("Role not found", error_code="ROLE_NOT_FOUND")
        try:
            assignment = self.store.create_role_assignment(
                user_id,
                role.id,
                assigned_by=assigned_by,
                team_id=team_id,
                region_id=region_id,
                expires_at=expires_at,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "Role assignment already active",
                error_code="DUPLICATE_ROLE_ASSIGNMENT",
                detail=exc.detail,
            ) from exc
        self.invalidate_permission_cache(user_id)
        self.logger.info(
            "role_assigned",
            user_id=user_id,
            role=role_name,
            assigned_by=assigned_by,
            team_id=team_id,
            region_id=region_id,
        )
        return assignment

    def revoke_role(self, assignment_id: str, revoked_by: Optional[str] = None) -> bool:
        assignment = self.store.get_role_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Role assignment not found", error_code="ASSIGNMENT_NOT_FOUND")
        revoked = self.store.deactivate_role_assignment(assignment_id)
        self.invalidate_permission_cache(assignment.user_id)
        if revoked:
            self.logger.info(
                "role_revoked",
                user_id=assignment.user_id,
                assignment_id=assignment_id,
                revoked_by=revoked_by,
            )
        return revoked
