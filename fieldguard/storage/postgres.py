from __future__ import annotations

import contextlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from fieldguard.logging import get_logger
from fieldguard.storage.errors import ConstraintViolation, StoreUnavailable
from fieldguard.storage.models import (
    Action,
    AttemptType,
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
    SessionStatus,
    SupervisorPin,
    Team,
    User,
    UserPin,
    UserRoleAssignment,
    new_id,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS team (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    region_id TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS device (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL REFERENCES team(id),
    name TEXT NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_seen_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL REFERENCES team(id),
    code TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL DEFAULT '',
    role TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS user_pin (
    user_id TEXT PRIMARY KEY REFERENCES app_user(id),
    pin_hash TEXT NOT NULL,
    pin_salt TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS role (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    level INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE TABLE IF NOT EXISTS permission (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    resource TEXT NOT NULL,
    action TEXT NOT NULL,
    scope TEXT NOT NULL,
    conditions JSONB,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE TABLE IF NOT EXISTS role_permission (
    role_id TEXT NOT NULL REFERENCES role(id),
    permission_id TEXT NOT NULL REFERENCES permission(id),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    PRIMARY KEY (role_id, permission_id)
);
CREATE TABLE IF NOT EXISTS user_role_assignment (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id),
    role_id TEXT NOT NULL REFERENCES role(id),
    assigned_by TEXT,
    team_id TEXT,
    region_id TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS user_role_assignment_active
    ON user_role_assignment (user_id, role_id, COALESCE(team_id, ''), COALESCE(region_id, ''))
    WHERE is_active;
CREATE TABLE IF NOT EXISTS device_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id),
    team_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    ended_at TIMESTAMPTZ,
    status TEXT NOT NULL DEFAULT 'open',
    override_until TIMESTAMPTZ,
    last_activity_at TIMESTAMPTZ,
    token_jti TEXT,
    refresh_jti TEXT,
    ip_addr TEXT
);
CREATE INDEX IF NOT EXISTS device_session_device ON device_session (device_id) WHERE ended_at IS NULL;
CREATE TABLE IF NOT EXISTS supervisor_pin (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL REFERENCES team(id),
    name TEXT NOT NULL,
    pin_hash TEXT NOT NULL,
    pin_salt TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    rotated_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS supervisor_pin_one_active
    ON supervisor_pin (team_id) WHERE is_active;
CREATE TABLE IF NOT EXISTS policy_issue (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    team_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    issued_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    kid TEXT NOT NULL,
    payload JSONB NOT NULL,
    source_ip TEXT
);
CREATE INDEX IF NOT EXISTS policy_issue_device ON policy_issue (device_id, issued_at DESC);
CREATE TABLE IF NOT EXISTS jwt_revocation (
    jti TEXT PRIMARY KEY,
    revoked_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    reason TEXT NOT NULL,
    revoked_by TEXT
);
CREATE TABLE IF NOT EXISTS pin_attempt (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    attempt_type TEXT NOT NULL,
    success BOOLEAN NOT NULL,
    device_id TEXT,
    source_ip TEXT,
    attempted_at TIMESTAMPTZ NOT NULL
);
"""

_SESSION_COLUMNS = {
    "ended_at",
    "status",
    "override_until",
    "last_activity_at",
    "token_jti",
    "refresh_jti",
    "expires_at",
}


def _team(row: Dict[str, Any]) -> Team:
    return Team(**row)


def _device(row: Dict[str, Any]) -> Device:
    return Device(**row)


def _user(row: Dict[str, Any]) -> User:
    return User(**row)


def _role(row: Dict[str, Any]) -> Role:
    return Role(**row)


def _permission(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=row["id"],
        name=row["name"],
        resource=Resource(row["resource"]),
        action=Action(row["action"]),
        scope=Scope(row["scope"]),
        conditions=row.get("conditions"),
        is_active=row["is_active"],
    )


def _assignment(row: Dict[str, Any]) -> UserRoleAssignment:
    return UserRoleAssignment(**row)


def _session(row: Dict[str, Any]) -> Session:
    data = dict(row)
    data["status"] = SessionStatus(data["status"])
    return Session(**data)


def _supervisor_pin(row: Dict[str, Any]) -> SupervisorPin:
    return SupervisorPin(**row)


def _revocation(row: Dict[str, Any]) -> JWTRevocation:
    return JWTRevocation(**row)


class PostgresStore:
    """Postgres-backed credential store.

    Every public method runs on a pooled connection; statement and pool
    timeouts surface as ``StoreUnavailable`` so callers can answer 503.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self):
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    # teams / devices / users
    def create_team(
        self,
        name: str,
        *,
        timezone: str = "UTC",
        region_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> Team:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO team (id, name, timezone, region_id) VALUES (%s, %s, %s, %s) RETURNING *",
                    (team_id or new_id(), name, timezone, region_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("team already exists", {"team_id": team_id})
        return _team(row)

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM team WHERE id = %s", (team_id,)).fetchone()
        return _team(row) if row else None

    def create_device(
        self,
        team_id: str,
        *,
        name: str = "",
        device_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Device:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO device (id, team_id, name, is_active) VALUES (%s, %s, %s, %s) RETURNING *",
                    (device_id or new_id(), team_id, name, is_active),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("device team missing", {"team_id": team_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("device already exists", {"device_id": device_id})
        return _device(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM device WHERE id = %s", (device_id,)).fetchone()
        return _device(row) if row else None

    def touch_device(self, device_id: str, seen_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE device SET last_seen_at = %s WHERE id = %s", (seen_at, device_id)
            )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, team_id, code, display_name, role, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s) RETURNING *
                    """,
                    (user_id or new_id(), team_id, code, display_name, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("user code already exists", {"field": "code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user team missing", {"team_id": team_id})
        return _user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user(row) if row else None

    def get_user_by_code(self, code: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE code = %s", (code,)).fetchone()
        return _user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user(row) if row else None

    def save_user_pin(self, user_id: str, pin_hash: str, pin_salt: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_pin (user_id, pin_hash, pin_salt, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET pin_hash = EXCLUDED.pin_hash, pin_salt = EXCLUDED.pin_salt, updated_at = now()
                    """,
                    (user_id, pin_hash, pin_salt),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_user_pin(self, user_id: str) -> Optional[UserPin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_pin WHERE user_id = %s", (user_id,)
            ).fetchone()
        return UserPin(**row) if row else None

    # roles / permissions
    def create_role(
        self,
        name: str,
        level: int,
        *,
        description: str = "",
        role_id: Optional[str] = None,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO role (id, name, level, description) VALUES (%s, %s, %s, %s) RETURNING *",
                    (role_id or new_id(), name, level, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"name": name})
        return _role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return _role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return _role(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY level").fetchall()
        return [_role(row) for row in rows]

    def set_role_active(self, role_id: str, is_active: bool) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE role SET is_active = %s WHERE id = %s RETURNING *", (is_active, role_id)
            ).fetchone()
        return _role(row) if row else None

    def ensure_permission(
        self,
        resource: Resource,
        action: Action,
        *,
        scope: Scope = Scope.TEAM,
        conditions: Optional[dict] = None,
        name: Optional[str] = None,
    ) -> Permission:
        perm_name = name or f"{Resource(resource).value}_{Action(action).value}"
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO permission (id, name, resource, action, scope, conditions)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (name) DO NOTHING
                """,
                (
                    new_id(),
                    perm_name,
                    Resource(resource).value,
                    Action(action).value,
                    Scope(scope).value,
                    json.dumps(conditions) if conditions else None,
                ),
            )
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (perm_name,)
            ).fetchone()
        return _permission(row)

    def grant_permission(self, role_id: str, permission_id: str) -> RolePermission:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id, is_active)
                    VALUES (%s, %s, TRUE)
                    ON CONFLICT (role_id, permission_id) DO UPDATE SET is_active = TRUE
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission missing",
                {"role_id": role_id, "permission_id": permission_id},
            )
        return RolePermission(role_id=role_id, permission_id=permission_id)

    def revoke_permission(self, role_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE role_permission SET is_active = FALSE
                WHERE role_id = %s AND permission_id = %s AND is_active
                """,
                (role_id, permission_id),
            )
            return cur.rowcount > 0

    def list_role_permissions(
        self, role_ids: Sequence[str]
    ) -> List[Tuple[str, Permission]]:
        if not role_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT rp.role_id AS grant_role_id, p.*
                FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = ANY(%s) AND rp.is_active AND p.is_active
                """,
                (list(role_ids),),
            ).fetchall()
        results: List[Tuple[str, Permission]] = []
        for row in rows:
            data = dict(row)
            role_id = data.pop("grant_role_id")
            results.append((role_id, _permission(data)))
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
        try:
            with self._connect() as conn, conn.transaction():
                # lapsed assignments must not block a fresh grant of the same role
                conn.execute(
                    """
                    UPDATE user_role_assignment SET is_active = FALSE
                    WHERE user_id = %s AND role_id = %s AND is_active
                      AND expires_at IS NOT NULL AND expires_at <= now()
                    """,
                    (user_id, role_id),
                )
                row = conn.execute(
                    """
                    INSERT INTO user_role_assignment
                        (id, user_id, role_id, assigned_by, team_id, region_id, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING *
                    """,
                    (new_id(), user_id, role_id, assigned_by, team_id, region_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "duplicate active role assignment", {"user_id": user_id, "role_id": role_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "assignment user or role missing", {"user_id": user_id, "role_id": role_id}
            )
        return _assignment(row)

    def list_role_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_role_assignment WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [_assignment(row) for row in rows]

    def get_role_assignment(self, assignment_id: str) -> Optional[UserRoleAssignment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_role_assignment WHERE id = %s", (assignment_id,)
            ).fetchone()
        return _assignment(row) if row else None

    def deactivate_role_assignment(self, assignment_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_role_assignment SET is_active = FALSE WHERE id = %s AND is_active",
                (assignment_id,),
            )
            return cur.rowcount > 0

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
        session = Session.new(user_id, team_id, device_id, ttl=ttl, now=now, ip_addr=ip_addr)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO device_session
                        (id, user_id, team_id, device_id, started_at, expires_at,
                         status, last_activity_at, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.team_id,
                        session.device_id,
                        session.started_at,
                        session.expires_at,
                        session.status.value,
                        session.last_activity_at,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session(row) if row else None

    def update_session(self, session_id: str, **fields) -> Optional[Session]:
        unknown = set(fields) - _SESSION_COLUMNS
        if unknown:
            raise AttributeError(f"Session fields not updatable: {sorted(unknown)}")
        if not fields:
            return self.get_session(session_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        values = [v.value if isinstance(v, SessionStatus) else v for v in fields.values()]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE device_session SET {assignments} WHERE id = %s RETURNING *",
                (*values, session_id),
            ).fetchone()
        return _session(row) if row else None

    def extend_session_override(
        self, session_id: str, override_until: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE device_session
                SET override_until = GREATEST(COALESCE(override_until, %s), %s)
                WHERE id = %s RETURNING *
                """,
                (override_until, override_until, session_id),
            ).fetchone()
        return _session(row) if row else None

    def list_device_sessions(
        self, device_id: str, *, open_only: bool = True
    ) -> List[Session]:
        query = "SELECT * FROM device_session WHERE device_id = %s"
        if open_only:
            query += " AND ended_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(query, (device_id,)).fetchall()
        return [_session(row) for row in rows]

    # supervisor pins
    def create_supervisor_pin(
        self,
        team_id: str,
        name: str,
        pin_hash: str,
        pin_salt: str,
        *,
        created_by: Optional[str] = None,
    ) -> SupervisorPin:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO supervisor_pin (id, team_id, name, pin_hash, pin_salt, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s) RETURNING *
                    """,
                    (new_id(), team_id, name, pin_hash, pin_salt, created_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("active supervisor pin exists", {"team_id": team_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("supervisor pin team missing", {"team_id": team_id})
        return _supervisor_pin(row)

    def get_supervisor_pin(self, pin_id: str) -> Optional[SupervisorPin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM supervisor_pin WHERE id = %s", (pin_id,)
            ).fetchone()
        return _supervisor_pin(row) if row else None

    def list_supervisor_pins(
        self, team_id: str, *, active_only: bool = True
    ) -> List[SupervisorPin]:
        query = "SELECT * FROM supervisor_pin WHERE team_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (team_id,)).fetchall()
        return [_supervisor_pin(row) for row in rows]

    def deactivate_supervisor_pin(self, pin_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE supervisor_pin SET is_active = FALSE, rotated_at = now()
                WHERE id = %s AND is_active
                """,
                (pin_id,),
            )
            return cur.rowcount > 0

    def rotate_supervisor_pin(
        self,
        team_id: str,
        name: str,
        pin_hash: str,
        pin_salt: str,
        *,
        rotated_by: Optional[str] = None,
    ) -> Tuple[SupervisorPin, List[str]]:
        """Deactivate the team's active PIN and insert its replacement in one transaction.

        A crash before commit rolls both writes back, leaving the old PIN
        active. A concurrent rotation loses on the one-active-PIN index.
        """
        now = utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                deactivated = conn.execute(
                    """
                    UPDATE supervisor_pin SET is_active = FALSE, rotated_at = %s
                    WHERE team_id = %s AND is_active RETURNING id
                    """,
                    (now, team_id),
                ).fetchall()
                row = conn.execute(
                    """
                    INSERT INTO supervisor_pin (id, team_id, name, pin_hash, pin_salt, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s) RETURNING *
                    """,
                    (new_id(), team_id, name, pin_hash, pin_salt, rotated_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("concurrent supervisor pin rotation", {"team_id": team_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("supervisor pin team missing", {"team_id": team_id})
        return _supervisor_pin(row), [r["id"] for r in deactivated]

    # policy issues
    def record_policy_issue(self, issue: PolicyIssue) -> PolicyIssue:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO policy_issue
                    (id, device_id, team_id, version, issued_at, expires_at, kid, payload, source_ip)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    issue.id,
                    issue.device_id,
                    issue.team_id,
                    issue.version,
                    issue.issued_at,
                    issue.expires_at,
                    issue.kid,
                    json.dumps(issue.payload),
                    issue.source_ip,
                ),
            )
        return issue

    def list_policy_issues(self, device_id: str, limit: int = 10) -> List[PolicyIssue]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM policy_issue WHERE device_id = %s
                ORDER BY issued_at DESC LIMIT %s
                """,
                (device_id, limit),
            ).fetchall()
        return [PolicyIssue(**row) for row in rows]

    # token revocations
    def add_revocation(self, revocation: JWTRevocation) -> JWTRevocation:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jwt_revocation (jti, revoked_at, expires_at, reason, revoked_by)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                """,
                (
                    revocation.jti,
                    revocation.revoked_at,
                    revocation.expires_at,
                    revocation.reason,
                    revocation.revoked_by,
                ),
            )
        return revocation

    def get_revocation(self, jti: str) -> Optional[JWTRevocation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM jwt_revocation WHERE jti = %s", (jti,)
            ).fetchone()
        return _revocation(row) if row else None

    def purge_expired_revocations(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM jwt_revocation WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # pin attempts
    def record_pin_attempt(self, attempt: PinAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pin_attempt
                    (id, subject_id, attempt_type, success, device_id, source_ip, attempted_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.subject_id,
                    AttemptType(attempt.attempt_type).value,
                    attempt.success,
                    attempt.device_id,
                    attempt.source_ip,
                    attempt.attempted_at,
                ),
            )

    def list_pin_attempts(
        self, subject_id: Optional[str] = None, limit: int = 100
    ) -> List[PinAttempt]:
        with self._connect() as conn:
            if subject_id is None:
                rows = conn.execute(
                    "SELECT * FROM pin_attempt ORDER BY attempted_at DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM pin_attempt WHERE subject_id = %s
                    ORDER BY attempted_at DESC LIMIT %s
                    """,
                    (subject_id, limit),
                ).fetchall()
        attempts = [
            PinAttempt(**{**row, "attempt_type": AttemptType(row["attempt_type"])})
            for row in rows
        ]
        attempts.reverse()
        return attempts
