from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from warden.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PrincipalResponse,
    SessionResponse,
    SessionsRevokedResponse,
    TokenRefreshRequest,
    TokenResponse,
)
from warden.service.auth import Principal, extract_bearer
from warden.service.permissions import Permission
from warden.service.rate_limit import rate_key
from warden.service.runtime import get_runtime
from warden.storage.models import DeviceInfo

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_principal(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, alias="X-Session-ID"),
) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, session_id)


async def _apply_rate_limit(
    response: Response, resource: str, principal: Principal, request: Request
) -> None:
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(
        rate_key(principal.id, _client_ip(request)), resource
    )
    for name, value in decision.headers.items():
        response.headers[name] = value


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange identifier and password (plus MFA code if enrolled) for tokens.

    Raises:
        401: invalid credentials, MFA required or invalid
        423: account locked
        429: too many attempts from this address for this identifier
    """
    runtime = get_runtime()
    device = DeviceInfo(
        device_id=body.device.device_id if body.device else None,
        fingerprint=body.device.fingerprint if body.device else None,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    result = await runtime.auth.login(
        body.identifier, body.password, mfa_code=body.mfa_code, device=device
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            principal_id=result.principal.id,
            role=result.principal.role,
            session_id=result.session_id,
            **result.tokens.to_dict(),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(**pair.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        extract_bearer(authorization),
        refresh_token=body.refresh_token if body else None,
        session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    request: Request, response: Response, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.auth.authorize(principal, Permission.PROFILE_READ)
    await _apply_rate_limit(response, "read", principal, request)
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            id=principal.id,
            role=principal.role,
            device_id=principal.device_id,
            session_id=principal.session_id,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    request: Request, response: Response, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.auth.authorize(principal, Permission.SESSIONS_READ)
    await _apply_rate_limit(response, "read", principal, request)
    sessions = await runtime.sessions.list_active(principal.id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                session_id=session.session_id,
                created_at=session.created_at,
                last_activity_at=session.last_activity_at,
                expires_at=session.expires_at,
                device_id=session.device.device_id,
                user_agent=session.device.user_agent,
                ip_address=session.device.ip_address,
                current=session.session_id == principal.session_id,
            )
            for session in sessions
        ],
    )


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    request: Request, response: Response, principal: Principal = Depends(get_principal)
):
    """Sign out every device, including the caller's."""
    runtime = get_runtime()
    runtime.auth.authorize(principal, Permission.SESSIONS_REVOKE)
    await _apply_rate_limit(response, "sensitive", principal, request)
    revoked = await runtime.sessions.revoke_all(principal.id)
    await runtime.tokens.revoke_all(principal.id)
    return Envelope(status="ok", data=SessionsRevokedResponse(revoked=revoked))
