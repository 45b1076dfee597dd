from __future__ import annotations

from typing import Optional

from warden.config import FailurePolicy, Settings
from warden.logging import get_logger, hash_identifier
from warden.service.policy import handle_store_outage
from warden.storage.base import KeyValueStore
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class LoginGuard:
    """Failed-login counting and account lockout.

    The attempt counter and the lock flag are separate keys with separate
    TTLs: the counter lives for the attempt window, the lock for the lockout
    duration. A lock therefore outlasts the counter that triggered it.
    """

    ATTEMPTS_KEY = "login:attempts:{identifier}"
    LOCK_KEY = "login:locked:{identifier}"

    def __init__(self, settings: Settings, store: KeyValueStore) -> None:
        self.settings = settings
        self.store = store
        self.max_attempts = settings.login_max_attempts
        self.window_seconds = settings.login_attempt_window_seconds
        self.lockout_seconds = settings.login_lockout_seconds
        self.failure_policy: FailurePolicy = settings.auth_failure_policy

    @staticmethod
    def _normalize(identifier: str) -> str:
        return hash_identifier(identifier)

    def _attempts_key(self, identifier: str) -> str:
        return self.ATTEMPTS_KEY.format(identifier=self._normalize(identifier))

    def _lock_key(self, identifier: str) -> str:
        return self.LOCK_KEY.format(identifier=self._normalize(identifier))

    async def record_attempt(self, identifier: str, success: bool) -> int:
        """Count a login outcome; returns the current failure count."""
        try:
            if success:
                await self.store.delete(self._attempts_key(identifier))
                return 0
            attempts = await self.store.incr(
                self._attempts_key(identifier), ttl_seconds=self.window_seconds
            )
            logger.info(
                "login_attempt_failed",
                identifier_hash=self._normalize(identifier),
                attempts=attempts,
                max_attempts=self.max_attempts,
            )
            if attempts >= self.max_attempts:
                await self.lock(identifier)
            return attempts
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="login_guard",
                operation="record_attempt",
                identifier_hash=self._normalize(identifier),
            )
            return 0

    async def lock(self, identifier: str, duration_seconds: Optional[int] = None) -> None:
        duration = duration_seconds or self.lockout_seconds
        try:
            await self.store.set(self._lock_key(identifier), "1", duration)
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="login_guard",
                operation="lock",
                identifier_hash=self._normalize(identifier),
            )
            return
        logger.warning(
            "account_locked",
            identifier_hash=self._normalize(identifier),
            lockout_seconds=duration,
        )

    async def unlock(self, identifier: str) -> None:
        try:
            await self.store.delete(self._lock_key(identifier), self._attempts_key(identifier))
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="login_guard",
                operation="unlock",
                identifier_hash=self._normalize(identifier),
            )
            return
        logger.info("account_unlocked", identifier_hash=self._normalize(identifier))

    async def is_locked(self, identifier: str) -> bool:
        try:
            return await self.store.exists(self._lock_key(identifier))
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="login_guard",
                operation="is_locked",
                identifier_hash=self._normalize(identifier),
            )
            return False

    async def lock_remaining(self, identifier: str) -> int:
        """Seconds until the lock lifts; 0 when not locked."""
        try:
            remaining = await self.store.ttl(self._lock_key(identifier))
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="login_guard",
                operation="lock_remaining",
                identifier_hash=self._normalize(identifier),
            )
            return 0
        return max(0, remaining or 0)
