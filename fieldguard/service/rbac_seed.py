from __future__ import annotations

from typing import Dict, List, Tuple

from fieldguard.logging import get_logger
from fieldguard.storage.models import Action, Resource, Role, Scope

logger = get_logger(__name__)

R = Resource
A = Action

# name -> (level, description, grants)
DEFAULT_ROLES: Dict[str, Tuple[int, str, List[Tuple[Resource, Action]]]] = {
    "TEAM_MEMBER": (
        1,
        "Frontline survey operators with basic team access",
        [
            (R.TEAMS, A.READ),
            (R.USERS, A.READ),
            (R.DEVICES, A.READ),
            (R.DEVICES, A.CREATE),
            (R.DEVICES, A.UPDATE),
            (R.TELEMETRY, A.CREATE),
            (R.TELEMETRY, A.READ),
            (R.POLICY, A.READ),
            (R.AUTH, A.CREATE),
            (R.AUTH, A.READ),
        ],
    ),
    "FIELD_SUPERVISOR": (
        2,
        "On-site supervisors managing field operations and team devices",
        [
            (R.TEAMS, A.MANAGE),
            (R.USERS, A.MANAGE),
            (R.DEVICES, A.MANAGE),
            (R.SUPERVISOR_PINS, A.READ),
            (R.SUPERVISOR_PINS, A.MANAGE),
            (R.SUPERVISOR_PINS, A.EXECUTE),
            (R.TELEMETRY, A.MANAGE),
            (R.POLICY, A.MANAGE),
            (R.AUTH, A.MANAGE),
        ],
    ),
    "REGIONAL_MANAGER": (
        3,
        "Multi-team regional oversight with cross-team access within region",
        [
            (R.TEAMS, A.CREATE),
            (R.USERS, A.CREATE),
            (R.DEVICES, A.DELETE),
            (R.SUPERVISOR_PINS, A.DELETE),
            (R.SUPERVISOR_PINS, A.EXECUTE),
            (R.SUPPORT_TICKETS, A.READ),
            (R.SUPPORT_TICKETS, A.CREATE),
            (R.AUDIT_LOGS, A.READ),
        ],
    ),
    "SUPPORT_AGENT": (
        4,
        "User support and troubleshooting capabilities",
        [
            (R.TEAMS, A.READ),
            (R.USERS, A.READ),
            (R.DEVICES, A.READ),
            (R.TELEMETRY, A.READ),
            (R.POLICY, A.READ),
            (R.SUPPORT_TICKETS, A.MANAGE),
            (R.AUDIT_LOGS, A.READ),
        ],
    ),
    "AUDITOR": (
        5,
        "Read-only audit access and compliance monitoring",
        [
            (R.TEAMS, A.READ),
            (R.USERS, A.READ),
            (R.DEVICES, A.READ),
            (R.TELEMETRY, A.READ),
            (R.POLICY, A.READ),
            (R.SUPPORT_TICKETS, A.READ),
            (R.AUDIT_LOGS, A.READ),
        ],
    ),
    "DEVICE_MANAGER": (
        6,
        "Device lifecycle management",
        [
            (R.DEVICES, A.MANAGE),
            (R.TEAMS, A.READ),
            (R.USERS, A.READ),
            (R.TELEMETRY, A.READ),
            (R.TELEMETRY, A.MANAGE),
            (R.POLICY, A.READ),
            (R.SUPPORT_TICKETS, A.CREATE),
            (R.SUPPORT_TICKETS, A.READ),
        ],
    ),
    "POLICY_ADMIN": (
        7,
        "Policy creation and management",
        [
            (R.POLICY, A.MANAGE),
            (R.TEAMS, A.READ),
            (R.USERS, A.READ),
            (R.DEVICES, A.READ),
            (R.TELEMETRY, A.READ),
            (R.SUPPORT_TICKETS, A.CREATE),
            (R.SUPPORT_TICKETS, A.READ),
            (R.AUDIT_LOGS, A.READ),
        ],
    ),
    "NATIONAL_SUPPORT_ADMIN": (
        8,
        "Cross-team operational access (no system settings)",
        [
            (R.TEAMS, A.READ),
            (R.USERS, A.READ),
            (R.DEVICES, A.MANAGE),
            (R.SUPERVISOR_PINS, A.READ),
            (R.SUPERVISOR_PINS, A.EXECUTE),
            (R.TELEMETRY, A.MANAGE),
            (R.POLICY, A.MANAGE),
            (R.AUTH, A.MANAGE),
            (R.SUPPORT_TICKETS, A.MANAGE),
            (R.AUDIT_LOGS, A.READ),
        ],
    ),
    "SYSTEM_ADMIN": (
        9,
        "Full system configuration and administrative access",
        [
            (R.TEAMS, A.MANAGE),
            (R.USERS, A.MANAGE),
            (R.DEVICES, A.MANAGE),
            (R.SUPERVISOR_PINS, A.MANAGE),
            (R.SUPERVISOR_PINS, A.EXECUTE),
            (R.TELEMETRY, A.MANAGE),
            (R.POLICY, A.MANAGE),
            (R.AUTH, A.MANAGE),
            (R.SYSTEM_SETTINGS, A.MANAGE),
            (R.ORGANIZATION, A.MANAGE),
            (R.SUPPORT_TICKETS, A.MANAGE),
            (R.AUDIT_LOGS, A.MANAGE),
        ],
    ),
}

# role -> lower-level roles whose grants it also receives; AUDITOR stays read-only
DEFAULT_ROLE_INHERITANCE: Dict[str, List[str]] = {
    "SUPPORT_AGENT": ["TEAM_MEMBER"],
    "DEVICE_MANAGER": ["TEAM_MEMBER"],
    "FIELD_SUPERVISOR": ["TEAM_MEMBER"],
    "REGIONAL_MANAGER": ["FIELD_SUPERVISOR"],
    "POLICY_ADMIN": ["FIELD_SUPERVISOR"],
    "NATIONAL_SUPPORT_ADMIN": ["REGIONAL_MANAGER", "SUPPORT_AGENT"],
    "SYSTEM_ADMIN": ["REGIONAL_MANAGER", "POLICY_ADMIN", "DEVICE_MANAGER"],
}

_SCOPE_BY_RESOURCE = {
    Resource.SYSTEM_SETTINGS: Scope.SYSTEM,
    Resource.ORGANIZATION: Scope.ORGANIZATION,
}


def seed_default_roles(store) -> Dict[str, Role]:
    """Create the default roles and their grants; safe to run repeatedly."""
    roles: Dict[str, Role] = {}
    created = 0
    for name, (level, description, grants) in DEFAULT_ROLES.items():
        role = store.get_role_by_name(name)
        if role is None:
            role = store.create_role(name, level, description=description)
            created += 1
        for resource, action in grants:
            permission = store.ensure_permission(
                resource, action, scope=_SCOPE_BY_RESOURCE.get(resource, Scope.TEAM)
            )
            store.grant_permission(role.id, permission.id)
        roles[name] = role
    logger.info("rbac_roles_seeded", roles=len(roles), created=created)
    return roles
