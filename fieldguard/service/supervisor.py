from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from fieldguard.config import Settings
from fieldguard.logging import get_logger
from fieldguard.service.credentials import CredentialVerifier
from fieldguard.service.errors import ConflictError, NotFoundError, ValidationError
from fieldguard.storage.errors import ConstraintViolation
from fieldguard.storage.models import SupervisorPin, Team

logger = get_logger(__name__)


class SupervisorPinStore(Protocol):
    def get_team(self, team_id: str) -> Optional[Team]: ...

    def create_supervisor_pin(
        self,
        team_id: str,
        name: str,
        pin_hash: str,
        pin_salt: str,
        *,
        created_by: Optional[str] = None,
    ) -> SupervisorPin: ...

    def get_supervisor_pin(self, pin_id: str) -> Optional[SupervisorPin]: ...

    def list_supervisor_pins(
        self, team_id: str, *, active_only: bool = True
    ) -> List[SupervisorPin]: ...

    def deactivate_supervisor_pin(self, pin_id: str) -> bool: ...

    def rotate_supervisor_pin(
        self,
        team_id: str,
        name: str,
        pin_hash: str,
        pin_salt: str,
        *,
        rotated_by: Optional[str] = None,
    ) -> Tuple[SupervisorPin, List[str]]: ...


class SupervisorPinService:
    """Administration and verification of per-team supervisor PINs.

    Exactly one PIN per team is expected to be active. Creation refuses a
    second active PIN; rotation swaps old for new in one store operation.
    """

    def __init__(
        self,
        store: SupervisorPinStore,
        settings: Settings,
        credentials: CredentialVerifier,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.min_length = settings.supervisor_pin_min_length

    def _validate_pin(self, pin: str) -> None:
        if not pin or not pin.isdigit():
            raise ValidationError("Supervisor PIN must be numeric", error_code="WEAK_PIN")
        if len(pin) < self.min_length:
            raise ValidationError(
                f"Supervisor PIN must be at least {self.min_length} digits",
                error_code="WEAK_PIN",
            )

    def _require_team(self, team_id: str) -> Team:
        team = self.store.get_team(team_id)
        if team is None or not team.is_active:
            raise NotFoundError("Team not found", error_code="TEAM_NOT_FOUND")
        return team

    def create(
        self, team_id: str, name: str, pin: str, created_by: Optional[str] = None
    ) -> SupervisorPin:
        self._require_team(team_id)
        self._validate_pin(pin)
        if self.store.list_supervisor_pins(team_id):
            raise ConflictError(
                "Team already has an active supervisor PIN",
                error_code="SUPERVISOR_PIN_EXISTS",
            )
        pin_hash, pin_salt = self.credentials.hash(pin)
        try:
            record = self.store.create_supervisor_pin(
                team_id, name, pin_hash, pin_salt, created_by=created_by
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent create
            raise ConflictError(
                "Team already has an active supervisor PIN",
                error_code="SUPERVISOR_PIN_EXISTS",
                detail=exc.detail,
            ) from exc
        logger.info(
            "supervisor_pin_created", team_id=team_id, pin_id=record.id, created_by=created_by
        )
        return record

    def rotate(
        self,
        team_id: str,
        new_pin: str,
        name: Optional[str] = None,
        rotated_by: Optional[str] = None,
    ) -> SupervisorPin:
        self._require_team(team_id)
        self._validate_pin(new_pin)
        current = self.store.list_supervisor_pins(team_id)
        label = name or (current[0].name if current else "Supervisor PIN")
        pin_hash, pin_salt = self.credentials.hash(new_pin)
        try:
            record, deactivated = self.store.rotate_supervisor_pin(
                team_id, label, pin_hash, pin_salt, rotated_by=rotated_by
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "Concurrent supervisor PIN rotation", error_code="CONFLICT", detail=exc.detail
            ) from exc
        logger.info(
            "supervisor_pin_rotated",
            team_id=team_id,
            pin_id=record.id,
            deactivated=deactivated,
            rotated_by=rotated_by,
        )
        return record

    def deactivate(self, pin_id: str) -> bool:
        record = self.store.get_supervisor_pin(pin_id)
        if record is None:
            raise NotFoundError("Supervisor PIN not found", error_code="NOT_FOUND")
        changed = self.store.deactivate_supervisor_pin(pin_id)
        if changed:
            logger.info("supervisor_pin_deactivated", team_id=record.team_id, pin_id=pin_id)
        return changed

    def get_active(self, team_id: str) -> Optional[SupervisorPin]:
        active = self.store.list_supervisor_pins(team_id)
        if len(active) > 1:
            # only reachable after an interrupted legacy rotation
            logger.warning("supervisor_pin_multiple_active", team_id=team_id, count=len(active))
        return max(active, key=lambda p: p.created_at) if active else None

    def verify(self, team_id: str, pin: str) -> Optional[SupervisorPin]:
        """Return the matching active PIN record, or ``None`` on mismatch.

        Raises ``NotFoundError(NO_SUPERVISOR_PIN)`` when the team has no active PIN.
        """
        active = self.store.list_supervisor_pins(team_id)
        if not active:
            raise NotFoundError(
                "No active supervisor PIN found for this team", error_code="NO_SUPERVISOR_PIN"
            )
        for record in active:
            if self.credentials.verify(pin, record.pin_hash, record.pin_salt):
                return record
        return None
