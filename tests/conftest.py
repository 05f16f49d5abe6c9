import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Seed the environment before any package import reads it
_test_tmp_dir = tempfile.mkdtemp(prefix="fieldguard_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "POLICY_SIGNING_PRIVATE_KEY", "AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8="
)
os.environ.setdefault("POLICY_SIGNING_KEY_ID", "test-key")
# Cheap KDF parameters keep the suite fast
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_TIME_COST", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fieldguard.config import Settings  # noqa: E402
from fieldguard.service.authorization import AuthorizationEngine  # noqa: E402
from fieldguard.service.credentials import CredentialVerifier  # noqa: E402
from fieldguard.service.policy import PolicyIssuer, PolicySigner  # noqa: E402
from fieldguard.service.rate_limit import (  # noqa: E402
    LockoutGuard,
    MemoryRateLimitBackend,
    RateLimiter,
)
from fieldguard.service.rbac_seed import seed_default_roles  # noqa: E402
from fieldguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from fieldguard.service.sessions import SessionService  # noqa: E402
from fieldguard.service.supervisor import SupervisorPinService  # noqa: E402
from fieldguard.service.tokens import TokenService  # noqa: E402
from fieldguard.storage.memory import MemoryStore  # noqa: E402

USER_PIN = "123456"
SUPERVISOR_PIN = "9876"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Controllable clock injected into services."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class Services:
    settings: Settings
    store: MemoryStore
    clock: FakeClock
    credentials: CredentialVerifier
    rate_limiter: RateLimiter
    lockout: LockoutGuard
    tokens: TokenService
    authorization: AuthorizationEngine
    supervisor_pins: SupervisorPinService
    policy: PolicyIssuer
    sessions: SessionService


def build_services(settings: Settings, store: MemoryStore, clock: FakeClock) -> Services:
    backend = MemoryRateLimitBackend()
    credentials = CredentialVerifier(settings)
    rate_limiter = RateLimiter(settings, backend, clock=clock)
    lockout = LockoutGuard(settings, backend, clock=clock)
    tokens = TokenService(settings, store, clock=clock)
    authorization = AuthorizationEngine(store, settings, clock=clock)
    supervisor_pins = SupervisorPinService(store, settings, credentials)
    signer = PolicySigner.from_base64(
        settings.policy_signing_private_key, settings.policy_signing_key_id
    )
    policy = PolicyIssuer(store, settings, signer, clock=clock)
    sessions = SessionService(
        store,
        settings,
        credentials=credentials,
        rate_limiter=rate_limiter,
        lockout=lockout,
        tokens=tokens,
        supervisor_pins=supervisor_pins,
        policy=policy,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        clock=clock,
        credentials=credentials,
        rate_limiter=rate_limiter,
        lockout=lockout,
        tokens=tokens,
        authorization=authorization,
        supervisor_pins=supervisor_pins,
        policy=policy,
        sessions=sessions,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings.from_env()


@pytest.fixture
def clock() -> FakeClock:
    # a Wednesday morning, inside the default weekday window
    return FakeClock(datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def services(settings, store, clock) -> Services:
    return build_services(settings, store, clock)


def seed_field_team(services: Services) -> SimpleNamespace:
    """Two teams, device ``dev-1`` and user ``u001`` with PIN 123456 on team-1."""
    store = services.store
    team = store.create_team("North Field", timezone="UTC", region_id="region-1", team_id="team-1")
    other_team = store.create_team(
        "South Field", timezone="UTC", region_id="region-2", team_id="team-2"
    )
    device = store.create_device(team.id, name="Tablet 1", device_id="dev-1")
    other_device = store.create_device(other_team.id, name="Tablet 9", device_id="dev-9")
    user = store.create_user(team.id, "u001", display_name="Field Operator")
    pin_hash, pin_salt = services.credentials.hash(USER_PIN)
    store.save_user_pin(user.id, pin_hash, pin_salt)
    supervisor = services.supervisor_pins.create(team.id, "Team lead", SUPERVISOR_PIN)
    roles = seed_default_roles(store)
    return SimpleNamespace(
        team=team,
        other_team=other_team,
        device=device,
        other_device=other_device,
        user=user,
        supervisor=supervisor,
        roles=roles,
    )


@pytest.fixture
def seeded(services) -> SimpleNamespace:
    return seed_field_team(services)
