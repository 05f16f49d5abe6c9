from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fieldguard.storage.models import Session


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a stable machine-readable reason."""

    code: str
    message: str
    details: Optional[Any] = None
    retry_after: Optional[int] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., alias="deviceId", max_length=128)
    user_code: str = Field(..., alias="userCode", max_length=64)
    pin: str = Field(..., max_length=64)

    @field_validator("device_id", "user_code")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _strip_required(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class OverrideRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    supervisor_pin: str = Field(..., max_length=64)
    device_id: str = Field(..., alias="deviceId", max_length=128)
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=128)

    @field_validator("device_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _strip_required(value)


class PolicyVerifyRequest(BaseModel):
    signed_document: str = Field(..., max_length=16384)


class RotatePinRequest(BaseModel):
    new_pin: str = Field(..., max_length=64)
    name: Optional[str] = Field(default=None, max_length=128)


class SessionOut(BaseModel):
    session_id: str
    user_id: str
    device_id: str
    status: str
    started_at: datetime
    expires_at: datetime
    override_until: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: Session, now: datetime) -> "SessionOut":
        return cls(
            session_id=session.id,
            user_id=session.user_id,
            device_id=session.device_id,
            status=session.effective_status(now).value,
            started_at=session.started_at,
            expires_at=session.expires_at,
            override_until=session.override_until,
        )


class LoginResponse(BaseModel):
    session: SessionOut
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    policy_version: int


class RefreshResponse(BaseModel):
    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"


class OverrideResponse(BaseModel):
    override_until: datetime
    token: str
    session_ids: list[str] = Field(default_factory=list)


class WhoAmIResponse(BaseModel):
    user_id: str
    user_code: str
    display_name: str
    team_id: str
    team_name: Optional[str] = None
    session: SessionOut
    policy_version: int
