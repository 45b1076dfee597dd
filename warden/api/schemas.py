from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProblemDetail(BaseModel):
    """Rejection envelope returned for every error response."""

    type: str
    title: str
    status: int
    detail: str
    instance: str
    timestamp: str = Field(default_factory=_utcnow)
    request_id: Optional[str] = None
    code: str
    errors: Optional[List[str]] = None
    extra: Optional[dict] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class DeviceContext(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    fingerprint: Optional[str] = Field(default=None, max_length=256)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)
    mfa_code: Optional[str] = Field(default=None, max_length=16)
    device: Optional[DeviceContext] = None

    @field_validator("identifier")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("identifier must not be blank")
        return value


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int


class LoginResponse(TokenResponse):
    principal_id: str
    role: str
    session_id: str


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PrincipalResponse(BaseModel):
    id: str
    role: str
    device_id: Optional[str] = None
    session_id: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str
    created_at: float
    last_activity_at: float
    expires_at: float
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    current: bool = False


class SessionsRevokedResponse(BaseModel):
    revoked: int
