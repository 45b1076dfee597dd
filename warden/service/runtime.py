from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.credentials import CredentialVault
from warden.service.login_guard import LoginGuard
from warden.service.mfa import MFACoordinator
from warden.service.rate_limit import RateLimiter
from warden.service.sessions import SessionRegistry
from warden.service.tokens import TokenIssuer
from warden.storage.errors import StoreUnavailable
from warden.storage.memory import MemoryPrincipalStore, MemoryStore
from warden.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the shared store and the singleton auth services."""

    def __init__(self, settings: Optional[Settings] = None, *, principals=None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, RedisStore] = self._build_store()
        self.principals = principals or MemoryPrincipalStore()

        self.credentials = CredentialVault(self.settings, self.store)
        self.tokens = TokenIssuer(self.settings, self.store)
        self.mfa = MFACoordinator(self.settings, self.store)
        self.sessions = SessionRegistry(self.settings, self.store)
        self.login_guard = LoginGuard(self.settings, self.store)
        self.rate_limiter = RateLimiter(self.settings, self.store)
        self.auth = AuthService(
            self.settings,
            self.principals,
            credentials=self.credentials,
            tokens=self.tokens,
            mfa=self.mfa,
            sessions=self.sessions,
            login_guard=self.login_guard,
            rate_limiter=self.rate_limiter,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            auth_failure_policy=self.settings.auth_failure_policy.value,
            rate_limit_failure_policy=self.settings.rate_limit_failure_policy.value,
            secret_rotation_enabled=self.settings.secret_rotation_enabled,
        )

    def _build_store(self) -> Union[MemoryStore, RedisStore]:
        if self.settings.use_memory_store:
            return MemoryStore()
        if self.settings.redis_url:
            return RedisStore(
                self.settings.redis_url, timeout_seconds=self.settings.store_timeout_seconds
            )
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, lockout, revocation and rate limits; "
                "set REDIS_URL or TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            )
        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            message=(
                f"Running without Redis under {fallback_mode}; sessions, lockout and rate "
                "limits are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryStore()

    async def startup(self) -> None:
        if isinstance(self.store, RedisStore):
            try:
                await self.store.ping()
            except StoreUnavailable as exc:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError("Redis is unreachable at startup") from exc
                logger.warning(
                    "redis_unreachable_at_startup",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        self.tokens.start()

    async def shutdown(self) -> None:
        await self.tokens.stop()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
