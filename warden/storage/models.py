from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass
class PrincipalRecord:
    """What the auth core needs to know about an account from the user store."""

    id: str
    identifier: str
    role: str = "user"
    password_hash: Optional[str] = None
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class DeviceInfo:
    device_id: Optional[str] = None
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Session:
    session_id: str
    principal_id: str
    created_at: float
    last_activity_at: float
    ttl_seconds: int
    sequence: int = 0
    device: DeviceInfo = field(default_factory=DeviceInfo)

    @property
    def expires_at(self) -> float:
        return self.last_activity_at + self.ttl_seconds

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        data = json.loads(raw)
        device = DeviceInfo(**(data.pop("device", None) or {}))
        return cls(device=device, **data)
