from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service.credentials import CredentialVault
from warden.service.errors import (
    AccountLockedError,
    AuthenticationRequiredError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    MFAAlreadyEnabledError,
    MFAInvalidError,
    MFARequiredError,
    SessionInvalidError,
    WeakCredentialError,
)
from warden.service.login_guard import LoginGuard
from warden.service.mfa import MFACoordinator, MFASecret
from warden.service.permissions import Permission, has_permission
from warden.service.rate_limit import RateLimitDecision, RateLimiter
from warden.service.sessions import SessionRegistry
from warden.service.tokens import TokenClaims, TokenIssuer, TokenPair
from warden.storage.models import DeviceInfo, PrincipalRecord

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    """Lookups the auth core needs from the user store."""

    def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]: ...

    def get_principal_by_identifier(self, identifier: str) -> Optional[PrincipalRecord]: ...

    def save_password_hash(self, principal_id: str, password_hash: str) -> None: ...

    def set_mfa_secret(
        self, principal_id: str, secret: Optional[str], enabled: bool = False
    ) -> None: ...


@dataclass(frozen=True)
class Principal:
    """The actor behind an authenticated request."""

    id: str
    role: str
    device_id: Optional[str] = None
    session_id: Optional[str] = None
    token_jti: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: TokenClaims, session_id: Optional[str] = None) -> "Principal":
        return cls(
            id=claims.principal_id,
            role=claims.role,
            device_id=claims.device_id,
            session_id=session_id or claims.session_id,
            token_jti=claims.jti,
        )


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair
    session_id: str


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class AuthService:
    """Request-boundary facade composing the auth components."""

    def __init__(
        self,
        settings: Settings,
        principals: PrincipalStore,
        *,
        credentials: CredentialVault,
        tokens: TokenIssuer,
        mfa: MFACoordinator,
        sessions: SessionRegistry,
        login_guard: LoginGuard,
        rate_limiter: RateLimiter,
    ) -> None:
        self.settings = settings
        self.principals = principals
        self.credentials = credentials
        self.tokens = tokens
        self.mfa = mfa
        self.sessions = sessions
        self.login_guard = login_guard
        self.rate_limiter = rate_limiter

    # -- request authentication -------------------------------------------

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str] = None
    ) -> Principal:
        """Resolve the bearer token (and session, if any) to a principal."""
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationRequiredError("Authentication credentials were not provided")
        claims = await self.tokens.verify(token)

        if session_id and claims.session_id and session_id != claims.session_id:
            raise SessionInvalidError("Session does not belong to this token")
        sid = session_id or claims.session_id
        if sid and not await self.sessions.validate(claims.principal_id, sid):
            raise SessionInvalidError("Session has expired or was revoked")
        return Principal.from_claims(claims, sid)

    def authorize(self, principal: Principal, permission: Permission) -> None:
        if not has_permission(principal.role, permission):
            logger.info(
                "permission_denied",
                principal_id=principal.id,
                role=principal.role,
                permission=permission.value,
            )
            raise InsufficientPermissionsError(
                "You do not have permission to perform this action",
                detail={"permission": permission.value},
            )

    async def check_rate_limit(self, key: str, resource: str = "api") -> RateLimitDecision:
        return await self.rate_limiter.check(key, resource)

    # -- tokens -------------------------------------------------------------

    async def issue_tokens(
        self,
        principal_id: str,
        role: str,
        device_id: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        return await self.tokens.issue(principal_id, role, device_id, session_id=session_id)

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = await self.tokens.consume_refresh(refresh_token)
        record = self.principals.get_principal(claims.principal_id)
        if record is None or not record.is_active:
            raise InvalidCredentialsError("Account is not available")
        if claims.session_id and not await self.sessions.validate(
            claims.principal_id, claims.session_id
        ):
            raise SessionInvalidError("Session has expired or was revoked")
        # Role is re-read so a demotion takes effect at the next refresh.
        return await self.tokens.issue(
            record.id, record.role, claims.device_id, session_id=claims.session_id
        )

    async def logout(
        self,
        access_token: str,
        *,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        claims = await self.tokens.verify(access_token)
        await self.tokens.revoke(access_token)
        if refresh_token:
            await self.tokens.revoke(refresh_token)
        sid = session_id or claims.session_id
        if sid:
            await self.sessions.revoke(claims.principal_id, sid)
        logger.info("logout", principal_id=claims.principal_id, session_id=sid)

    # -- login ----------------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        mfa_code: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> LoginResult:
        device = device or DeviceInfo()
        identifier_hash = hash_identifier(identifier)
        await self.rate_limiter.enforce(
            f"{device.ip_address or 'unknown'}:{identifier_hash}", "auth"
        )

        if await self.login_guard.is_locked(identifier):
            raise AccountLockedError(
                "Account temporarily locked due to too many failed attempts",
                retry_after=await self.login_guard.lock_remaining(identifier),
            )

        record = self.principals.get_principal_by_identifier(identifier)
        if record is None or not record.password_hash or not record.is_active:
            self.credentials.verify_dummy(password)
            await self._reject_login(identifier)
        if not self.credentials.verify(password, record.password_hash):
            await self._reject_login(identifier)

        if record.mfa_enabled:
            if not mfa_code:
                raise MFARequiredError("Multi-factor authentication code required")
            if not await self._check_mfa(record, mfa_code):
                await self.login_guard.record_attempt(identifier, success=False)
                raise MFAInvalidError("Invalid multi-factor authentication code")

        await self.login_guard.record_attempt(identifier, success=True)
        if self.credentials.needs_rehash(record.password_hash):
            self.principals.save_password_hash(record.id, self.credentials.hash(password))

        session_id = await self.sessions.create(record.id, device)
        tokens = await self.tokens.issue(
            record.id, record.role, device.device_id, session_id=session_id
        )
        logger.info(
            "login_succeeded",
            principal_id=record.id,
            session_id=session_id,
            mfa=record.mfa_enabled,
        )
        principal = Principal(
            id=record.id, role=record.role, device_id=device.device_id, session_id=session_id
        )
        return LoginResult(principal=principal, tokens=tokens, session_id=session_id)

    async def _reject_login(self, identifier: str) -> None:
        await self.login_guard.record_attempt(identifier, success=False)
        if await self.login_guard.is_locked(identifier):
            raise AccountLockedError(
                "Account temporarily locked due to too many failed attempts",
                retry_after=await self.login_guard.lock_remaining(identifier),
            )
        raise InvalidCredentialsError("Invalid identifier or password")

    async def _check_mfa(self, record: PrincipalRecord, code: str) -> bool:
        secret = self.mfa.open_secret(record.mfa_secret) if record.mfa_secret else None
        if secret and self.mfa.verify_totp(code, secret):
            return True
        return await self.mfa.verify_backup_code(record.id, code)

    # -- credentials -------------------------------------------------------

    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and sign the principal out everywhere.

        Returns the number of sessions that were revoked.
        """
        record = self.principals.get_principal(principal_id)
        if record is None or not record.password_hash:
            raise InvalidCredentialsError("Account is not available")
        if not self.credentials.verify(current_password, record.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")

        assessment = self.credentials.assess_strength(new_password)
        if not assessment.valid:
            raise WeakCredentialError(
                "Password does not meet requirements",
                errors=assessment.errors,
                detail={"strength": assessment.strength.value},
            )
        if self.credentials.verify(
            new_password, record.password_hash
        ) or await self.credentials.is_password_reused(principal_id, new_password):
            raise WeakCredentialError(
                "Password was used recently",
                errors=["Password was used recently"],
            )

        old_hash = record.password_hash
        new_hash = self.credentials.hash(new_password)
        self.principals.save_password_hash(principal_id, new_hash)
        await self.credentials.remember_password(principal_id, old_hash)
        revoked = await self.sessions.revoke_all(principal_id)
        await self.tokens.revoke_all(principal_id)
        logger.info("password_changed", principal_id=principal_id, sessions_revoked=revoked)
        return revoked

    # -- MFA enrollment ----------------------------------------------------

    async def begin_mfa_enrollment(self, principal_id: str) -> MFASecret:
        record = self.principals.get_principal(principal_id)
        if record is None:
            raise InvalidCredentialsError("Account is not available")
        if record.mfa_enabled:
            raise MFAAlreadyEnabledError("Multi-factor authentication is already enabled")
        secret = self.mfa.generate_secret(principal_id)
        # Stays disabled until a code proves the authenticator is set up.
        self.principals.set_mfa_secret(
            principal_id, self.mfa.seal_secret(secret.secret), enabled=False
        )
        logger.info("mfa_enrollment_started", principal_id=principal_id)
        return secret

    async def confirm_mfa_enrollment(self, principal_id: str, code: str) -> List[str]:
        record = self.principals.get_principal(principal_id)
        if record is None or not record.mfa_secret:
            raise MFAInvalidError("No MFA enrollment in progress")
        secret = self.mfa.open_secret(record.mfa_secret)
        if not secret or not self.mfa.verify_totp(code, secret):
            raise MFAInvalidError("Invalid multi-factor authentication code")
        self.principals.set_mfa_secret(principal_id, record.mfa_secret, enabled=True)
        codes = await self.mfa.enroll_backup_codes(principal_id)
        logger.info("mfa_enabled", principal_id=principal_id)
        return codes
