from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from fieldguard.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    OverrideRequest,
    OverrideResponse,
    PolicyVerifyRequest,
    RefreshRequest,
    RefreshResponse,
    RotatePinRequest,
    SessionOut,
    WhoAmIResponse,
)
from fieldguard.logging import get_correlation_id
from fieldguard.service.authorization import PermissionContext, ResourceDescriptor
from fieldguard.service.errors import AuthenticationError, NotFoundError
from fieldguard.service.runtime import get_runtime
from fieldguard.storage.models import Action, Resource

router = APIRouter(prefix="/v1")


@dataclass
class AuthContext:
    user_id: str
    team_id: str
    session_id: str
    device_id: str
    access_token: str


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return envelope


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Malformed authorization header")
    return token.strip()


def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    who = get_runtime().sessions.whoami(token)
    return AuthContext(
        user_id=who.user.id,
        team_id=who.user.team_id,
        session_id=who.session.id,
        device_id=who.session.device_id,
        access_token=token,
    )


def _permission_context(request: Request, principal: AuthContext) -> PermissionContext:
    return PermissionContext(
        ip_address=_client_ip(request),
        team_id=principal.team_id,
        device_id=principal.device_id,
        request_id=get_correlation_id(),
    )


# auth ---------------------------------------------------------------------
@router.post("/auth/login", response_model=Envelope)
def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = runtime.sessions.login(
        body.device_id, body.user_code, body.pin, source_ip=_client_ip(request)
    )
    response = LoginResponse(
        session=SessionOut.from_session(result.session, _now()),
        access_token=result.access_token.token,
        refresh_token=result.refresh_token.token,
        policy_version=result.policy_version,
    )
    return _ok(response.model_dump(mode="json"))


@router.post("/auth/refresh", response_model=Envelope)
def refresh(body: RefreshRequest):
    issued = get_runtime().sessions.refresh(body.refresh_token)
    response = RefreshResponse(access_token=issued.token, expires_at=issued.expires_at)
    return _ok(response.model_dump(mode="json"))


@router.post("/auth/logout", response_model=Envelope)
def logout(principal: AuthContext = Depends(get_principal)):
    session = get_runtime().sessions.logout(principal.session_id, principal.user_id)
    return _ok({"session_id": session.id, "status": session.effective_status(_now()).value})


@router.get("/auth/whoami", response_model=Envelope)
def whoami(authorization: Optional[str] = Header(None)):
    who = get_runtime().sessions.whoami(_bearer_token(authorization))
    response = WhoAmIResponse(
        user_id=who.user.id,
        user_code=who.user.code,
        display_name=who.user.display_name,
        team_id=who.user.team_id,
        team_name=who.team.name if who.team else None,
        session=SessionOut.from_session(who.session, _now()),
        policy_version=who.policy_version,
    )
    return _ok(response.model_dump(mode="json"))


# supervisor override ------------------------------------------------------
@router.post("/supervisor/override", response_model=Envelope)
def supervisor_override(body: OverrideRequest, request: Request):
    result = get_runtime().sessions.supervisor_override(
        body.supervisor_pin,
        body.device_id,
        source_ip=_client_ip(request),
        session_id=body.session_id,
    )
    response = OverrideResponse(
        override_until=result.override_until,
        token=result.token.token,
        session_ids=result.session_ids,
    )
    return _ok(response.model_dump(mode="json"))


# policy -------------------------------------------------------------------
# declared before /policy/{device_id} so the literal path wins
@router.get("/policy/public-key", response_model=Envelope)
def policy_public_key():
    policy = get_runtime().policy
    return _ok(
        {"kid": policy.signer.key_id, "alg": "EdDSA", "public_key": policy.public_key()}
    )


@router.post("/policy/verify", response_model=Envelope)
def policy_verify(body: PolicyVerifyRequest):
    result = get_runtime().policy.verify(body.signed_document)
    return _ok({"valid": result.valid, "payload": result.payload, "error": result.error})


@router.get("/policy/{device_id}", response_model=Envelope)
def get_policy(
    device_id: str,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    device = runtime.store.get_device(device_id)
    if device is None:
        raise NotFoundError("Device not found or inactive", error_code="DEVICE_NOT_FOUND")
    runtime.authorization.require_permission(
        principal.user_id,
        Resource.POLICY,
        Action.READ,
        target=ResourceDescriptor(type=Resource.POLICY, team_id=device.team_id, id=device.id),
        context=_permission_context(request, principal),
    )
    signed = runtime.policy.issue_policy(device_id, source_ip=_client_ip(request))
    return _ok(
        {
            "signed_policy": signed.signed_document,
            "policy": signed.payload,
            "kid": signed.issue.kid,
            "version": signed.issue.version,
        }
    )


# admin --------------------------------------------------------------------
@router.post("/admin/sessions/{session_id}/end", response_model=Envelope)
def admin_end_session(
    session_id: str,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    session = runtime.store.get_session(session_id)
    if session is None:
        raise NotFoundError("Session not found", error_code="SESSION_NOT_FOUND")
    runtime.authorization.require_permission(
        principal.user_id,
        Resource.AUTH,
        Action.MANAGE,
        target=ResourceDescriptor(type=Resource.AUTH, team_id=session.team_id, id=session.id),
        context=_permission_context(request, principal),
    )
    ended = runtime.sessions.end_session(session_id, ended_by=principal.user_id)
    return _ok({"session_id": ended.id, "status": ended.effective_status(_now()).value})


@router.post("/admin/supervisor-pins/{team_id}/rotate", response_model=Envelope)
def admin_rotate_supervisor_pin(
    team_id: str,
    body: RotatePinRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.authorization.require_permission(
        principal.user_id,
        Resource.SUPERVISOR_PINS,
        Action.MANAGE,
        target=ResourceDescriptor(type=Resource.SUPERVISOR_PINS, team_id=team_id),
        context=_permission_context(request, principal),
    )
    record = runtime.supervisor_pins.rotate(
        team_id, body.new_pin, name=body.name, rotated_by=principal.user_id
    )
    return _ok(
        {
            "pin_id": record.id,
            "team_id": record.team_id,
            "name": record.name,
            "created_at": record.created_at.isoformat(),
        }
    )
