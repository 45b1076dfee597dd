from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable


class Permission(str, Enum):
    """Everything a role can be granted. ``ALL`` stands for every member."""

    ALL = "*"

    PROFILE_READ = "profile:read"
    PROFILE_WRITE = "profile:write"
    SESSIONS_READ = "sessions:read"
    SESSIONS_REVOKE = "sessions:revoke"
    CONTENT_READ = "content:read"
    CONTENT_WRITE = "content:write"
    AI_USE = "ai:use"
    UPLOAD = "upload"
    ANALYTICS_READ = "analytics:read"
    API_KEYS_MANAGE = "api_keys:manage"
    USERS_READ = "users:read"
    USERS_MANAGE = "users:manage"
    ACCOUNTS_UNLOCK = "accounts:unlock"
    SETTINGS_MANAGE = "settings:manage"


_USER: FrozenSet[Permission] = frozenset(
    {
        Permission.PROFILE_READ,
        Permission.PROFILE_WRITE,
        Permission.SESSIONS_READ,
        Permission.SESSIONS_REVOKE,
        Permission.CONTENT_READ,
    }
)
_PREMIUM = _USER | {Permission.AI_USE, Permission.UPLOAD}
_ENTERPRISE = _PREMIUM | {Permission.ANALYTICS_READ, Permission.API_KEYS_MANAGE}
_ADMIN = _ENTERPRISE | {
    Permission.CONTENT_WRITE,
    Permission.USERS_READ,
    Permission.USERS_MANAGE,
    Permission.ACCOUNTS_UNLOCK,
}

ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    "user": _USER,
    "premium": frozenset(_PREMIUM),
    "enterprise": frozenset(_ENTERPRISE),
    "admin": frozenset(_ADMIN),
    "super_admin": frozenset({Permission.ALL}),
}


def permissions_for(role: str) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS.get(role, frozenset())


def has_permission(role: str, permission: Permission) -> bool:
    granted = permissions_for(role)
    return Permission.ALL in granted or permission in granted


def has_all(role: str, permissions: Iterable[Permission]) -> bool:
    return all(has_permission(role, permission) for permission in permissions)
