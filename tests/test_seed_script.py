import pytest

from conftest import USER_PIN
from fieldguard.service.runtime import get_runtime
from fieldguard.storage.models import Action, Resource
from scripts.seed_rbac import main, seed


class TestSeedScript:
    def test_creates_admin(self):
        """A fresh store gets the roles, the team and a SYSTEM_ADMIN user."""
        result = seed("admin01", USER_PIN, "hq", "Headquarters")
        runtime = get_runtime()
        assert result["status"] == "created"
        assert len(runtime.store.list_roles()) == 9
        assert runtime.store.get_team("hq").name == "Headquarters"
        assert runtime.authorization.check_permission(
            result["user_id"], Resource.SYSTEM_SETTINGS, Action.UPDATE
        ).allowed

    def test_rerun_is_idempotent(self):
        """Running twice reports the existing admin instead of failing."""
        first = seed("admin01", USER_PIN, "hq", "Headquarters")
        second = seed("admin01", USER_PIN, "hq", "Headquarters")
        assert second == {"user_id": first["user_id"], "code": "admin01", "status": "already_admin"}
        assert len(get_runtime().store.list_roles()) == 9

    def test_dry_run_writes_nothing(self):
        """Dry runs leave the store untouched."""
        result = seed("admin01", USER_PIN, "hq", "Headquarters", dry_run=True)
        assert result["status"] == "dry_run"
        assert get_runtime().store.list_roles() == []

    def test_weak_pin_rejected(self):
        """New administrators need a numeric PIN of the minimum length."""
        with pytest.raises(ValueError):
            seed("admin01", "12", "hq", "Headquarters")

    def test_main_requires_code_and_pin(self, monkeypatch):
        """The CLI exits non-zero without credentials."""
        monkeypatch.delenv("ADMIN_CODE", raising=False)
        monkeypatch.delenv("ADMIN_PIN", raising=False)
        monkeypatch.setattr("sys.argv", ["seed_rbac.py"])
        assert main() == 1
