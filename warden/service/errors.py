from __future__ import annotations

from typing import Dict, List, Optional


class ConfigError(Exception):
    """Invalid configuration detected at startup."""


class ServiceError(Exception):
    """Base class for typed rejections returned to callers.

    Every subclass pins a stable machine-readable ``error_code``, an HTTP
    ``status_code`` and a short ``title``; ``message`` is the human detail.
    ``headers`` carries response headers such as ``Retry-After``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    title: str = "Bad Request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = dict(headers or {})


class AuthenticationRequiredError(ServiceError):
    """No credential was presented (401)."""
    status_code = 401
    error_code = "authentication_required"
    title = "Authentication Required"


class InvalidCredentialsError(ServiceError):
    """Identifier/password pair did not match (401)."""
    status_code = 401
    error_code = "invalid_credentials"
    title = "Invalid Credentials"


class TokenExpiredError(ServiceError):
    status_code = 401
    error_code = "token_expired"
    title = "Token Expired"


class TokenInvalidError(ServiceError):
    status_code = 401
    error_code = "token_invalid"
    title = "Invalid Token"


class TokenRevokedError(ServiceError):
    status_code = 401
    error_code = "token_revoked"
    title = "Token Revoked"


class SessionInvalidError(ServiceError):
    status_code = 401
    error_code = "session_invalid"
    title = "Invalid Session"


class AccountLockedError(ServiceError):
    """Too many failed attempts; carries the remaining lock time."""
    status_code = 423
    error_code = "account_locked"
    title = "Account Locked"

    def __init__(self, message: str, *, retry_after: Optional[int] = None, **kwargs) -> None:
        headers = dict(kwargs.pop("headers", None) or {})
        if retry_after is not None:
            headers["Retry-After"] = str(max(1, int(retry_after)))
        super().__init__(message, headers=headers, **kwargs)
        self.retry_after = retry_after


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    title = "Rate Limit Exceeded"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> None:
        merged = dict(headers or {})
        merged["Retry-After"] = str(max(1, int(retry_after)))
        super().__init__(message, headers=merged, **kwargs)
        self.retry_after = retry_after


class WeakCredentialError(ServiceError):
    status_code = 400
    error_code = "weak_credential"
    title = "Weak Credential"

    def __init__(self, message: str, *, errors: Optional[List[str]] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])


class MFARequiredError(ServiceError):
    status_code = 401
    error_code = "mfa_required"
    title = "MFA Required"


class MFAInvalidError(ServiceError):
    status_code = 401
    error_code = "mfa_invalid"
    title = "Invalid MFA Code"


class MFAAlreadyEnabledError(ServiceError):
    """Enrollment requested while MFA is active (409)."""
    status_code = 409
    error_code = "mfa_already_enabled"
    title = "MFA Already Enabled"


class InsufficientPermissionsError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    title = "Insufficient Permissions"


class ServiceUnavailableError(ServiceError):
    """Shared store unreachable on a fail-closed path (503)."""
    status_code = 503
    error_code = "store_unavailable"
    title = "Service Unavailable"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    title = "Internal Server Error"


__all__ = [
    "ConfigError",
    "ServiceError",
    "AuthenticationRequiredError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenRevokedError",
    "SessionInvalidError",
    "AccountLockedError",
    "RateLimitedError",
    "WeakCredentialError",
    "MFARequiredError",
    "MFAInvalidError",
    "InsufficientPermissionsError",
    "ServiceUnavailableError",
    "ServerError",
]
