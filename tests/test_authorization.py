from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from fieldguard.service.authorization import (
    AuthorizationEngine,
    PermissionContext,
    ResourceDescriptor,
)
from fieldguard.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
)
from fieldguard.storage.errors import StoreUnavailable
from fieldguard.storage.models import Action, Resource


def _user(services, seeded, code, *, team=None):
    return services.store.create_user((team or seeded.team).id, code)


class TestEffectivePermissions:
    def test_no_roles_denies_everything(self, services, seeded):
        """A user without assignments has no permissions and every check is denied."""
        engine = services.authorization
        effective = engine.compute_effective_permissions(seeded.user.id)
        assert effective.permissions == []
        for resource in Resource:
            for action in Action:
                decision = engine.check_permission(seeded.user.id, resource, action)
                assert not decision.allowed

    def test_granted_permission_allows_and_caches(self, services, seeded):
        """A granted permission allows; the repeat call is a cache hit with the same decision."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "TEAM_MEMBER", team_id=seeded.team.id)
        first = engine.check_permission(seeded.user.id, Resource.POLICY, Action.READ)
        second = engine.check_permission(seeded.user.id, Resource.POLICY, Action.READ)
        assert first.allowed and second.allowed
        assert not first.cache_hit
        assert second.cache_hit
        assert first.granted_by == second.granted_by
        assert first.granted_by[0].role_name == "TEAM_MEMBER"

    def test_cache_hit_skips_the_store(self, services, seeded):
        """Within the TTL a repeat check does not read role data again."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "TEAM_MEMBER")
        engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ)
        with patch.object(
            services.store, "list_role_assignments", side_effect=AssertionError("store read")
        ):
            decision = engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ)
        assert decision.allowed and decision.cache_hit

    def test_cache_expires_after_ttl(self, services, seeded, clock):
        """Entries older than the cache TTL are recomputed."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "TEAM_MEMBER")
        engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ)
        clock.advance(seconds=services.settings.permission_cache_ttl_seconds + 1)
        decision = engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ)
        assert not decision.cache_hit
        assert engine.cleanup_expired_cache() == 0

    def test_manage_implies_every_action(self, services, seeded):
        """MANAGE on a resource grants the other actions on it."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "DEVICE_MANAGER")
        for action in (Action.DELETE, Action.LIST, Action.EXECUTE):
            assert engine.check_permission(seeded.user.id, Resource.DEVICES, action).allowed
        assert not engine.check_permission(seeded.user.id, Resource.AUDIT_LOGS, Action.READ).allowed

    def test_inherited_roles_contribute(self, services, seeded):
        """FIELD_SUPERVISOR inherits TEAM_MEMBER grants."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "FIELD_SUPERVISOR")
        decision = engine.check_permission(seeded.user.id, Resource.TELEMETRY, Action.CREATE)
        assert decision.allowed
        inherited = engine.get_inherited_permissions(seeded.user.id, Resource.AUTH)
        assert {p.role_name for p in inherited} == {"TEAM_MEMBER"}

    def test_auditor_is_read_only(self, services, seeded):
        """AUDITOR reads operational data but cannot change users, teams, PINs or auth."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "AUDITOR")
        for resource, action in (
            (Resource.USERS, Action.DELETE),
            (Resource.TEAMS, Action.DELETE),
            (Resource.SUPERVISOR_PINS, Action.MANAGE),
            (Resource.AUTH, Action.MANAGE),
            (Resource.DEVICES, Action.UPDATE),
        ):
            assert not engine.check_permission(seeded.user.id, resource, action).allowed
        assert engine.check_permission(seeded.user.id, Resource.AUDIT_LOGS, Action.READ).allowed
        assert engine.get_inherited_permissions(seeded.user.id) == []

    def test_higher_roles_inherit_lower_grants(self, services, seeded):
        """SYSTEM_ADMIN and NATIONAL_SUPPORT_ADMIN pick up grants only from lower levels."""
        engine = services.authorization
        admin = _user(services, seeded, "nsa04")
        engine.assign_role(admin.id, "NATIONAL_SUPPORT_ADMIN")
        effective = engine.compute_effective_permissions(admin.id)
        inherited = {r.name for r in effective.roles if r.inherited}
        assert inherited == {"REGIONAL_MANAGER", "FIELD_SUPERVISOR", "SUPPORT_AGENT", "TEAM_MEMBER"}
        assert not engine.check_permission(admin.id, Resource.ORGANIZATION, Action.MANAGE).allowed

    def test_expired_assignment_is_ignored(self, services, seeded, clock):
        """Assignments past expires_at stop contributing."""
        engine = services.authorization
        engine.assign_role(
            seeded.user.id, "TEAM_MEMBER", expires_at=clock() + timedelta(minutes=1)
        )
        assert engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ).allowed
        clock.advance(minutes=2)
        engine.invalidate_permission_cache(seeded.user.id)
        assert not engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ).allowed

    def test_revoke_invalidates_cache(self, services, seeded):
        """Revoking an assignment takes effect on the next check."""
        engine = services.authorization
        assignment = engine.assign_role(seeded.user.id, "TEAM_MEMBER")
        assert engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ).allowed
        assert engine.revoke_role(assignment.id, revoked_by="admin")
        decision = engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ)
        assert not decision.allowed
        assert decision.reason == "NO_PERMISSIONS"

    def test_inactive_role_is_skipped(self, services, seeded):
        """A deactivated role no longer grants anything."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "AUDITOR")
        services.store.set_role_active(seeded.roles["AUDITOR"].id, False)
        engine.invalidate_all()
        assert not engine.check_permission(seeded.user.id, Resource.AUDIT_LOGS, Action.READ).allowed

    def test_unknown_user(self, services, seeded):
        """Checks for a missing user deny with USER_NOT_FOUND."""
        decision = services.authorization.check_permission("nobody", Resource.TEAMS, Action.READ)
        assert not decision.allowed
        assert decision.reason == "USER_NOT_FOUND"

    def test_store_failure_reports_system_error(self, services, seeded):
        """A store outage denies with SYSTEM_ERROR and require_permission maps it to 503."""
        engine = services.authorization
        with patch.object(services.store, "get_user", side_effect=StoreUnavailable("down")):
            decision = engine.check_permission(seeded.user.id, Resource.TEAMS, Action.READ)
            assert decision.reason == "SYSTEM_ERROR"
            with pytest.raises(ServiceUnavailableError):
                engine.require_permission(seeded.user.id, Resource.TEAMS, Action.READ)


class TestConditions:
    def _grant_with_conditions(self, services, seeded, conditions):
        store = services.store
        role = store.create_role("NIGHT_SHIFT", 1)
        permission = store.ensure_permission(
            Resource.TELEMETRY,
            Action.AUDIT,
            conditions=conditions,
            name="TELEMETRY_AUDIT_CONDITIONAL",
        )
        store.grant_permission(role.id, permission.id)
        services.authorization.assign_role(seeded.user.id, "NIGHT_SHIFT")

    def test_time_window(self, services, seeded):
        """A grant limited to a UTC time window applies only inside it."""
        self._grant_with_conditions(
            services, seeded, {"time_window": {"start": "09:00", "end": "17:00"}}
        )
        engine = services.authorization
        inside = PermissionContext(now=datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc))
        outside = PermissionContext(now=datetime(2024, 5, 15, 20, 0, tzinfo=timezone.utc))
        assert engine.check_permission(seeded.user.id, "TELEMETRY", "AUDIT", inside).allowed
        decision = engine.check_permission(seeded.user.id, "TELEMETRY", "AUDIT", outside)
        assert decision.reason == "CONDITIONS_NOT_MET"

    def test_allowed_ips(self, services, seeded):
        """CIDR and single-address entries restrict the caller's IP."""
        self._grant_with_conditions(
            services, seeded, {"allowed_ips": ["10.0.0.0/8", "192.168.1.5"]}
        )
        engine = services.authorization
        check = lambda ip: engine.check_permission(  # noqa: E731
            seeded.user.id, Resource.TELEMETRY, Action.AUDIT, PermissionContext(ip_address=ip)
        ).allowed
        assert check("10.20.30.40")
        assert check("192.168.1.5")
        assert not check("192.168.1.6")
        assert not check(None)

    def test_allowed_days(self, services, seeded):
        """Day restrictions compare full day names case-insensitively."""
        self._grant_with_conditions(services, seeded, {"allowed_days": ["monday", "TUESDAY"]})
        engine = services.authorization
        wednesday = PermissionContext(now=datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc))
        monday = PermissionContext(now=datetime(2024, 5, 13, 12, 0, tzinfo=timezone.utc))
        assert not engine.check_permission(seeded.user.id, "TELEMETRY", "AUDIT", wednesday).allowed
        assert engine.check_permission(seeded.user.id, "TELEMETRY", "AUDIT", monday).allowed


class TestContextualAccess:
    def test_same_team_allowed(self, services, seeded):
        """A team member may act on their own team's resources."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "TEAM_MEMBER", team_id=seeded.team.id)
        target = ResourceDescriptor(Resource.DEVICES, team_id=seeded.team.id)
        assert engine.check_contextual_access(seeded.user.id, target, Action.READ).allowed

    def test_cross_team_denied(self, services, seeded):
        """Another team's resource is a TEAM_BOUNDARY_VIOLATION for ordinary roles."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "FIELD_SUPERVISOR", team_id=seeded.team.id)
        target = ResourceDescriptor(Resource.DEVICES, team_id=seeded.other_team.id)
        decision = engine.check_contextual_access(seeded.user.id, target, Action.READ)
        assert not decision.allowed
        assert decision.reason == "TEAM_BOUNDARY_VIOLATION"

    def test_cross_team_role_reads_other_teams(self, services, seeded):
        """Elevated cross-team roles may read operational resources of other teams."""
        engine = services.authorization
        auditor = _user(services, seeded, "aud01")
        engine.assign_role(auditor.id, "AUDITOR")
        target = ResourceDescriptor(Resource.TELEMETRY, team_id=seeded.other_team.id)
        decision = engine.check_contextual_access(auditor.id, target, Action.READ)
        assert decision.allowed
        assert decision.reason == "CROSS_TEAM_READ_ACCESS"
        write = engine.check_contextual_access(auditor.id, target, Action.UPDATE)
        assert write.reason == "TEAM_BOUNDARY_VIOLATION"

    def test_national_support_cross_team(self, services, seeded):
        """National support admins get cross-team operational reads with their own reason."""
        engine = services.authorization
        admin = _user(services, seeded, "nsa01")
        engine.assign_role(admin.id, "NATIONAL_SUPPORT_ADMIN")
        target = ResourceDescriptor(Resource.DEVICES, team_id=seeded.other_team.id)
        decision = engine.check_contextual_access(admin.id, target, Action.LIST)
        assert decision.reason == "NATIONAL_SUPPORT_ADMIN_CROSS_TEAM_ACCESS"

    @pytest.mark.parametrize("role", ["SYSTEM_ADMIN", "NATIONAL_SUPPORT_ADMIN", "AUDITOR"])
    def test_system_settings_never_cross_team(self, services, seeded, role):
        """SYSTEM_SETTINGS of another team is denied whatever the role."""
        engine = services.authorization
        user = _user(services, seeded, f"x-{role.lower()}")
        engine.assign_role(user.id, role)
        target = ResourceDescriptor(Resource.SYSTEM_SETTINGS, team_id=seeded.other_team.id)
        decision = engine.check_contextual_access(user.id, target, Action.READ)
        assert not decision.allowed
        assert decision.reason.startswith("SYSTEM_SETTINGS_ACCESS_DENIED")

    def test_region_boundary(self, services, seeded):
        """Targets in another region need a region-scoped assignment."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "FIELD_SUPERVISOR")
        own = ResourceDescriptor(Resource.DEVICES, region_id="region-1")
        foreign = ResourceDescriptor(Resource.DEVICES, region_id="region-2")
        assert engine.check_contextual_access(seeded.user.id, own, Action.READ).allowed
        decision = engine.check_contextual_access(seeded.user.id, foreign, Action.READ)
        assert decision.reason == "REGION_BOUNDARY_VIOLATION"

    def test_no_roles(self, services, seeded):
        """Without roles the contextual check fails with NO_ROLES."""
        target = ResourceDescriptor(Resource.DEVICES, team_id=seeded.team.id)
        decision = services.authorization.check_contextual_access(
            seeded.user.id, target, Action.READ
        )
        assert decision.reason == "NO_ROLES"


class TestSystemSettings:
    def test_level_gate(self, services, seeded):
        """Only directly assigned roles at the minimum level reach SYSTEM_SETTINGS."""
        engine = services.authorization
        admin = _user(services, seeded, "sys01")
        engine.assign_role(admin.id, "SYSTEM_ADMIN")
        assert engine.check_permission(admin.id, Resource.SYSTEM_SETTINGS, Action.UPDATE).allowed

        manager = _user(services, seeded, "pol01")
        engine.assign_role(manager.id, "POLICY_ADMIN")
        decision = engine.check_permission(manager.id, Resource.SYSTEM_SETTINGS, Action.READ)
        assert decision.reason == "SYSTEM_SETTINGS_ACCESS_DENIED"

    def test_national_support_excluded(self, services, seeded):
        """NATIONAL_SUPPORT_ADMIN is refused with its own reason."""
        engine = services.authorization
        admin = _user(services, seeded, "nsa02")
        engine.assign_role(admin.id, "NATIONAL_SUPPORT_ADMIN")
        decision = engine.check_permission(admin.id, Resource.SYSTEM_SETTINGS, Action.READ)
        assert decision.reason == "SYSTEM_SETTINGS_ACCESS_DENIED_NATIONAL_SUPPORT"

    def test_national_support_wins_over_system_admin(self, services, seeded):
        """Holding SYSTEM_ADMIN as well does not lift the national support refusal."""
        engine = services.authorization
        admin = _user(services, seeded, "nsa03")
        engine.assign_role(admin.id, "SYSTEM_ADMIN")
        engine.assign_role(admin.id, "NATIONAL_SUPPORT_ADMIN")
        decision = engine.check_permission(admin.id, Resource.SYSTEM_SETTINGS, Action.READ)
        assert decision.reason == "SYSTEM_SETTINGS_ACCESS_DENIED_NATIONAL_SUPPORT"
        target = ResourceDescriptor(Resource.SYSTEM_SETTINGS, team_id=seeded.team.id)
        access = engine.check_contextual_access(admin.id, target, Action.READ)
        assert access.reason == decision.reason


class TestRoleAdministration:
    def test_duplicate_assignment_conflicts(self, services, seeded):
        """A second active assignment of the same role and scope is a conflict."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "TEAM_MEMBER", team_id=seeded.team.id)
        with pytest.raises(ConflictError) as exc_info:
            engine.assign_role(seeded.user.id, "TEAM_MEMBER", team_id=seeded.team.id)
        assert exc_info.value.error_code == "DUPLICATE_ROLE_ASSIGNMENT"

    def test_unknown_role(self, services, seeded):
        """Assigning a role that does not exist is ROLE_NOT_FOUND."""
        with pytest.raises(NotFoundError) as exc_info:
            services.authorization.assign_role(seeded.user.id, "WIZARD")
        assert exc_info.value.error_code == "ROLE_NOT_FOUND"

    def test_role_levels(self, services, seeded):
        """Highest level follows direct roles; management needs a strictly higher level."""
        engine = services.authorization
        assert engine.get_user_highest_role_level(seeded.user.id) == 0
        engine.assign_role(seeded.user.id, "FIELD_SUPERVISOR")
        engine.assign_role(seeded.user.id, "TEAM_MEMBER")
        assert engine.get_user_highest_role_level(seeded.user.id) == 2
        assert engine.has_any_role(seeded.user.id, ["FIELD_SUPERVISOR", "AUDITOR"])
        assert not engine.has_any_role(seeded.user.id, ["SYSTEM_ADMIN"])
        assert engine.can_role_manage("SYSTEM_ADMIN", "POLICY_ADMIN")
        assert not engine.can_role_manage("TEAM_MEMBER", "TEAM_MEMBER")

    def test_require_permission_raises_reason(self, services, seeded):
        """require_permission surfaces the precise denial reason as the error code."""
        engine = services.authorization
        engine.assign_role(seeded.user.id, "FIELD_SUPERVISOR", team_id=seeded.team.id)
        target = ResourceDescriptor(Resource.AUTH, team_id=seeded.other_team.id)
        with pytest.raises(ForbiddenError) as exc_info:
            engine.require_permission(seeded.user.id, Resource.AUTH, Action.MANAGE, target=target)
        assert exc_info.value.error_code == "TEAM_BOUNDARY_VIOLATION"

    def test_cycles_in_inheritance_are_tolerated(self, services, seeded, settings):
        """A cyclic inheritance map still terminates."""
        engine = AuthorizationEngine(
            services.store,
            settings,
            role_inheritance={"AUDITOR": ["TEAM_MEMBER"], "TEAM_MEMBER": ["AUDITOR"]},
        )
        engine.assign_role(seeded.user.id, "AUDITOR")
        assert engine.check_permission(seeded.user.id, Resource.TELEMETRY, Action.CREATE).allowed

    def test_inheritance_never_climbs_levels(self, services, seeded, settings):
        """An entry naming a higher-level parent is ignored."""
        engine = AuthorizationEngine(
            services.store,
            settings,
            role_inheritance={"TEAM_MEMBER": ["SYSTEM_ADMIN"]},
        )
        engine.assign_role(seeded.user.id, "TEAM_MEMBER")
        assert not engine.check_permission(seeded.user.id, Resource.USERS, Action.DELETE).allowed
        assert engine.get_inherited_permissions(seeded.user.id) == []
