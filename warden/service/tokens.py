"""JWT issuance, verification, revocation and signing-secret rotation.

The signing secrets live only inside ``TokenIssuer``: a current secret that
signs everything and a previous secret that still verifies for a bounded grace
window after each rotation. Revoked tokens are tracked by ``jti`` in the shared
store with a TTL equal to the token's remaining lifetime, so the blacklist
prunes itself.
"""
from __future__ import annotations

import asyncio
import binascii
import contextlib
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import jwt
from jwt.utils import base64url_decode, base64url_encode

from warden.config import FailurePolicy, Settings
from warden.logging import get_logger
from warden.service.errors import (
    ConfigError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from warden.service.policy import handle_store_outage
from warden.storage.base import KeyValueStore
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class SecretRing:
    current: Optional[str]
    previous: Optional[str]
    rotated_at: float
    generation: int = 0


@dataclass(frozen=True)
class TokenClaims:
    principal_id: str
    role: str
    jti: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str
    token_type: str
    device_id: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        return cls(
            principal_id=str(payload["sub"]),
            role=str(payload.get("role") or "user"),
            jti=str(payload["jti"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            issuer=str(payload.get("iss", "")),
            audience=str(aud or ""),
            token_type=str(payload["type"]),
            device_id=payload.get("device_id"),
            session_id=payload.get("sid"),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
        }


def _is_canonical(token: str) -> bool:
    """Reject tokens whose segments only decode thanks to lenient base64 parsing.

    Trailing bits of the last base64 character (and stray characters that the
    decoder skips) do not change the decoded signature, so without this check a
    mutated token could still verify.
    """
    segments = token.split(".")
    if len(segments) != 3:
        return False
    for segment in segments:
        if not segment:
            return False
        try:
            decoded = base64url_decode(segment.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError):
            return False
        if base64url_encode(decoded).decode("ascii") != segment:
            return False
    return True


class TokenIssuer:
    """Mints and verifies access/refresh JWTs under a rotating secret."""

    BLACKLIST_KEY = "blacklist:{jti}"
    REFRESH_KEY = "refresh:{principal_id}:{jti}"
    REFRESH_INDEX_KEY = "refresh:index:{principal_id}"

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
        generate_secret: bool = True,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        self.algorithm = settings.jwt_algorithm
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds
        self.rotation_interval = settings.secret_rotation_interval_seconds
        self.grace_seconds = settings.secret_grace_seconds
        self.failure_policy: FailurePolicy = settings.auth_failure_policy

        # The previous secret must outlive every access token it signed.
        if self.rotation_interval <= self.access_ttl:
            raise ConfigError(
                "secret rotation interval "
                f"({self.rotation_interval}s) must exceed the access token TTL "
                f"({self.access_ttl}s)"
            )
        if self.grace_seconds > self.rotation_interval:
            raise ConfigError("secret grace window must not exceed the rotation interval")
        if self.grace_seconds < self.access_ttl:
            raise ConfigError(
                f"secret grace window ({self.grace_seconds}s) must cover the access token TTL "
                f"({self.access_ttl}s)"
            )

        initial = settings.jwt_secret or (self._new_secret() if generate_secret else None)
        self._ring = SecretRing(current=initial, previous=None, rotated_at=self._clock())
        self._rotation_task: Optional[asyncio.Task] = None

    @staticmethod
    def _new_secret() -> str:
        return secrets.token_hex(64)

    @property
    def generation(self) -> int:
        return self._ring.generation

    # -- signing ----------------------------------------------------------

    def sign(self, payload: Dict[str, Any]) -> str:
        current = self._ring.current
        if not current:
            raise ConfigError("no active signing secret")
        return jwt.encode(payload, current, algorithm=self.algorithm)

    def _verification_keys(self) -> List[str]:
        ring = self._ring
        keys = [ring.current] if ring.current else []
        if ring.previous and self._clock() - ring.rotated_at < self.grace_seconds:
            keys.append(ring.previous)
        return keys

    def _decode(self, token: str, *, check_expiry: bool = True) -> TokenClaims:
        if not token or not _is_canonical(token):
            raise TokenInvalidError("Invalid token")
        keys = self._verification_keys()
        if not keys:
            raise ConfigError("no active signing secret")

        payload: Optional[Dict[str, Any]] = None
        for key in keys:
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[self.algorithm],
                    issuer=self.issuer,
                    audience=self.audience,
                    options={
                        "require": ["exp", "iat", "jti", "sub", "type"],
                        # expiry is checked below against the injected clock
                        "verify_exp": False,
                        "verify_iat": False,
                        "verify_nbf": False,
                    },
                )
                break
            except jwt.InvalidSignatureError:
                continue
            except jwt.InvalidTokenError as exc:
                logger.info("jwt_rejected", reason=type(exc).__name__)
                raise TokenInvalidError("Invalid token") from exc
        if payload is None:
            raise TokenInvalidError("Invalid token")

        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError("Invalid token") from exc
        if check_expiry and claims.expires_at <= self._clock():
            raise TokenExpiredError("Token has expired")
        return claims

    # -- public operations -------------------------------------------------

    async def issue(
        self,
        principal_id: str,
        role: str,
        device_id: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        if not self._ring.current:
            raise ConfigError("no active signing secret")
        now = int(self._clock())
        base = {
            "sub": principal_id,
            "role": role,
            "device_id": device_id,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
        }
        if session_id:
            base["sid"] = session_id
        access_jti = uuid.uuid4().hex
        refresh_jti = uuid.uuid4().hex
        access_token = self.sign(
            {**base, "jti": access_jti, "type": ACCESS, "exp": now + self.access_ttl}
        )
        refresh_token = self.sign(
            {**base, "jti": refresh_jti, "type": REFRESH, "exp": now + self.refresh_ttl}
        )

        record = json.dumps(
            {
                "role": role,
                "device_id": device_id,
                "session_id": session_id,
                "created_at": now,
            },
            separators=(",", ":"),
        )
        try:
            await self.store.set(
                self.REFRESH_KEY.format(principal_id=principal_id, jti=refresh_jti),
                record,
                self.refresh_ttl,
            )
            await self.store.sadd(
                self.REFRESH_INDEX_KEY.format(principal_id=principal_id),
                refresh_jti,
                ttl_seconds=self.refresh_ttl,
            )
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="token",
                operation="persist_refresh",
                principal_id=principal_id,
            )

        logger.info(
            "tokens_issued",
            principal_id=principal_id,
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            generation=self._ring.generation,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            refresh_expires_in=self.refresh_ttl,
        )

    async def is_revoked(self, jti: str) -> bool:
        try:
            return await self.store.exists(self.BLACKLIST_KEY.format(jti=jti))
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy, exc, component="token", operation="blacklist_check", jti=jti
            )
            return False

    async def verify(self, token: str, *, token_type: Optional[str] = ACCESS) -> TokenClaims:
        """Return the claims of a valid token or raise a typed rejection.

        Tries the current secret, then the previous one while its grace window
        lasts. Expired tokens raise ``TokenExpiredError``; blacklisted ones
        ``TokenRevokedError``.
        """
        claims = self._decode(token)
        if token_type and claims.token_type != token_type:
            raise TokenInvalidError(f"Expected a {token_type} token")
        if await self.is_revoked(claims.jti):
            raise TokenRevokedError("This token has been revoked")
        return claims

    async def revoke(self, token: str) -> bool:
        """Blacklist a token for the rest of its natural lifetime.

        Returns False when the token has already expired (nothing to do).
        """
        claims = self._decode(token, check_expiry=False)
        remaining = int(claims.expires_at - self._clock())
        if remaining <= 0:
            return False
        try:
            await self.store.set(self.BLACKLIST_KEY.format(jti=claims.jti), "1", remaining)
            if claims.token_type == REFRESH:
                await self._drop_refresh_record(claims.principal_id, claims.jti)
        except StoreUnavailable as exc:
            # Revocation writes always fail closed.
            handle_store_outage(
                FailurePolicy.CLOSED,
                exc,
                component="token",
                operation="revoke",
                principal_id=claims.principal_id,
            )
            raise
        logger.info(
            "token_revoked",
            principal_id=claims.principal_id,
            jti=claims.jti,
            kind=claims.token_type,
            ttl_seconds=remaining,
        )
        return True

    async def _drop_refresh_record(self, principal_id: str, jti: str) -> int:
        removed = await self.store.delete(
            self.REFRESH_KEY.format(principal_id=principal_id, jti=jti)
        )
        await self.store.srem(self.REFRESH_INDEX_KEY.format(principal_id=principal_id), jti)
        return removed

    async def consume_refresh(self, refresh_token: str) -> TokenClaims:
        """Validate a refresh token and burn it so it cannot be replayed."""
        claims = await self.verify(refresh_token, token_type=REFRESH)
        try:
            removed = await self._drop_refresh_record(claims.principal_id, claims.jti)
        except StoreUnavailable as exc:
            handle_store_outage(
                FailurePolicy.CLOSED,
                exc,
                component="token",
                operation="consume_refresh",
                principal_id=claims.principal_id,
            )
            raise
        if not removed:
            # Either reused after a successful refresh or revoked server-side.
            logger.warning(
                "refresh_token_replayed", principal_id=claims.principal_id, jti=claims.jti
            )
            raise TokenRevokedError("Refresh token is no longer valid")
        remaining = int(claims.expires_at - self._clock())
        if remaining > 0:
            try:
                await self.store.set(self.BLACKLIST_KEY.format(jti=claims.jti), "1", remaining)
            except StoreUnavailable as exc:
                handle_store_outage(
                    FailurePolicy.CLOSED,
                    exc,
                    component="token",
                    operation="consume_refresh",
                    principal_id=claims.principal_id,
                )
                raise
        return claims

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = await self.consume_refresh(refresh_token)
        return await self.issue(
            claims.principal_id,
            claims.role,
            claims.device_id,
            session_id=claims.session_id,
        )

    async def revoke_all(self, principal_id: str) -> int:
        """Drop every persisted refresh token of a principal."""
        index_key = self.REFRESH_INDEX_KEY.format(principal_id=principal_id)
        try:
            jtis = await self.store.smembers(index_key)
            keys = [self.REFRESH_KEY.format(principal_id=principal_id, jti=jti) for jti in jtis]
            removed = await self.store.delete(*keys) if keys else 0
            await self.store.delete(index_key)
        except StoreUnavailable as exc:
            handle_store_outage(
                FailurePolicy.CLOSED,
                exc,
                component="token",
                operation="revoke_all",
                principal_id=principal_id,
            )
            raise
        logger.info("refresh_tokens_revoked", principal_id=principal_id, count=removed)
        return removed

    # -- rotation ----------------------------------------------------------

    def rotate_secret(self) -> int:
        """Shift current → previous and mint a new current secret."""
        ring = self._ring
        self._ring = SecretRing(
            current=self._new_secret(),
            previous=ring.current,
            rotated_at=self._clock(),
            generation=ring.generation + 1,
        )
        logger.info("jwt_secret_rotated", generation=self._ring.generation)
        return self._ring.generation

    async def _rotation_loop(self) -> None:
        while True:
            await asyncio.sleep(self.rotation_interval)
            self.rotate_secret()

    def start(self) -> None:
        """Start the background rotation timer on the running event loop."""
        if not self.settings.secret_rotation_enabled or self._rotation_task is not None:
            return
        self._rotation_task = asyncio.get_running_loop().create_task(self._rotation_loop())
        logger.info("jwt_secret_rotation_started", interval_seconds=self.rotation_interval)

    async def stop(self) -> None:
        task, self._rotation_task = self._rotation_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
