"""Behaviour of the in-memory store used by tests and local development."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from fieldguard.storage.errors import ConstraintViolation
from fieldguard.storage.memory import MemoryStore
from fieldguard.storage.models import JWTRevocation

NOW = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def populated():
    store = MemoryStore()
    team = store.create_team("North Field", team_id="team-1")
    store.create_device(team.id, device_id="dev-1")
    user = store.create_user(team.id, "u001")
    return store, team, user


class TestIntegrity:
    def test_duplicate_user_code(self, populated):
        """User codes are unique across teams."""
        store, team, _ = populated
        with pytest.raises(ConstraintViolation):
            store.create_user(team.id, "u001")

    def test_missing_team(self):
        """Devices and users need an existing team."""
        store = MemoryStore()
        with pytest.raises(ConstraintViolation):
            store.create_device("nope")
        with pytest.raises(ConstraintViolation):
            store.create_user("nope", "u001")

    def test_returned_rows_are_copies(self, populated):
        """Mutating a returned row does not change stored state."""
        store, _, user = populated
        user.is_active = False
        assert store.get_user(user.id).is_active

    def test_duplicate_active_role_assignment(self, populated):
        """An identical active assignment is refused; an expired one is not counted."""
        store, team, user = populated
        role = store.create_role("TEAM_MEMBER", 1)
        store.create_role_assignment(
            user.id, role.id, team_id=team.id, expires_at=datetime.now(timezone.utc) - timedelta(days=1)
        )
        store.create_role_assignment(user.id, role.id, team_id=team.id)
        with pytest.raises(ConstraintViolation):
            store.create_role_assignment(user.id, role.id, team_id=team.id)


class TestSessions:
    def test_update_rejects_unknown_fields(self, populated):
        """update_session only sets existing attributes."""
        store, team, user = populated
        session = store.create_session(user.id, team.id, "dev-1", ttl=timedelta(hours=8), now=NOW)
        with pytest.raises(AttributeError):
            store.update_session(session.id, colour="blue")

    def test_override_only_moves_forward(self, populated):
        """An earlier override_until never replaces a later one."""
        store, team, user = populated
        session = store.create_session(user.id, team.id, "dev-1", ttl=timedelta(hours=8), now=NOW)
        later = NOW + timedelta(hours=2)
        store.extend_session_override(session.id, later)
        store.extend_session_override(session.id, NOW + timedelta(minutes=30))
        assert store.get_session(session.id).override_until == later

    def test_list_device_sessions_skips_ended(self, populated):
        """Ended sessions are excluded unless asked for."""
        store, team, user = populated
        first = store.create_session(user.id, team.id, "dev-1", ttl=timedelta(hours=8), now=NOW)
        store.create_session(user.id, team.id, "dev-1", ttl=timedelta(hours=8), now=NOW)
        store.update_session(first.id, ended_at=NOW)
        assert len(store.list_device_sessions("dev-1")) == 1
        assert len(store.list_device_sessions("dev-1", open_only=False)) == 2


class TestSupervisorPins:
    def test_second_active_pin_is_a_constraint_violation(self, populated):
        """The store enforces one active PIN per team."""
        store, team, _ = populated
        store.create_supervisor_pin(team.id, "Lead", "h1", "s1")
        with pytest.raises(ConstraintViolation):
            store.create_supervisor_pin(team.id, "Backup", "h2", "s2")

    def test_concurrent_rotations_leave_one_active(self, populated):
        """Parallel rotations never leave zero or several active PINs."""
        store, team, _ = populated
        store.create_supervisor_pin(team.id, "Lead", "h0", "s0")
        errors = []

        def rotate(index: int) -> None:
            try:
                store.rotate_supervisor_pin(team.id, "Lead", f"h{index}", f"s{index}")
            except ConstraintViolation as exc:
                errors.append(exc)

        threads = [threading.Thread(target=rotate, args=(i,)) for i in range(1, 9)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(store.list_supervisor_pins(team.id)) == 1
        assert len(store.list_supervisor_pins(team.id, active_only=False)) == 9


class TestRevocations:
    def test_first_revocation_wins(self):
        """Re-adding a jti keeps the original row."""
        store = MemoryStore()
        first = JWTRevocation("jti-1", NOW, NOW + timedelta(hours=1), reason="logout")
        store.add_revocation(first)
        store.add_revocation(JWTRevocation("jti-1", NOW, NOW + timedelta(days=1), reason="other"))
        assert store.get_revocation("jti-1").reason == "logout"

    def test_purge(self):
        """Rows whose expiry has passed are purged."""
        store = MemoryStore()
        store.add_revocation(JWTRevocation("old", NOW, NOW + timedelta(minutes=1)))
        store.add_revocation(JWTRevocation("new", NOW, NOW + timedelta(days=1)))
        assert store.purge_expired_revocations(NOW + timedelta(hours=1)) == 1
        assert store.get_revocation("old") is None
