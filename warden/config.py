from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class FailurePolicy(str, Enum):
    """What to do when the shared store cannot be reached."""

    OPEN = "open"
    CLOSED = "closed"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for every shared-store call",
    )
    store_cas_retries: int = env_field(16, "STORE_CAS_RETRIES")

    # Tokens
    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        description="Seed for the initial signing secret; generated when unset",
    )
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-api", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("HS512", "JWT_ALGORITHM")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    secret_rotation_enabled: bool = env_field(True, "SECRET_ROTATION_ENABLED")
    secret_rotation_interval_seconds: int = env_field(
        24 * 60 * 60, "SECRET_ROTATION_INTERVAL_SECONDS"
    )
    secret_grace_seconds: int = env_field(
        15 * 60,
        "SECRET_GRACE_SECONDS",
        description="How long the previous secret still verifies after a rotation",
    )

    # Credentials
    password_pepper: str = env_field("", "PASSWORD_PEPPER")
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_min_entropy_bits: float = env_field(50.0, "PASSWORD_MIN_ENTROPY_BITS")
    password_history_limit: int = env_field(5, "PASSWORD_HISTORY_LIMIT")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # MFA
    mfa_issuer: str = env_field("Warden", "MFA_ISSUER")
    mfa_drift_steps: int = env_field(2, "MFA_DRIFT_STEPS")
    mfa_interval_seconds: int = env_field(30, "MFA_INTERVAL_SECONDS")
    mfa_digits: int = env_field(6, "MFA_DIGITS")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material sealing stored TOTP secrets; falls back to JWT_SECRET",
    )

    # Sessions
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS")
    session_ttl_seconds: int = env_field(30 * 60, "SESSION_TTL_SECONDS")

    # Lockout; window and lock duration are deliberately separate knobs
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(15 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS")
    login_lockout_seconds: int = env_field(30 * 60, "LOGIN_LOCKOUT_SECONDS")

    # Rate limits
    rate_limit_idle_ttl_seconds: int = env_field(60 * 60, "RATE_LIMIT_IDLE_TTL_SECONDS")

    auth_failure_policy: FailurePolicy = env_field(
        FailurePolicy.CLOSED,
        "AUTH_FAILURE_POLICY",
        description="Session validation, lockout and revocation checks on store outage",
    )
    rate_limit_failure_policy: FailurePolicy = env_field(
        FailurePolicy.OPEN,
        "RATE_LIMIT_FAILURE_POLICY",
        description="Best-effort rate limiting on store outage",
    )

    problem_type_base_url: str = env_field(
        "https://api.warden.dev/errors/", "PROBLEM_TYPE_BASE_URL"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("auth_failure_policy", "rate_limit_failure_policy", mode="before")
    @classmethod
    def _validate_policy(cls, value: Any) -> FailurePolicy:
        if isinstance(value, str):
            value = value.strip().lower()
        return FailurePolicy(value)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "secret_rotation_interval_seconds",
        "session_ttl_seconds",
        "login_attempt_window_seconds",
        "login_lockout_seconds",
        "max_concurrent_sessions",
        "login_max_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_rotation_window(self) -> "Settings":
        if self.secret_grace_seconds > self.secret_rotation_interval_seconds:
            raise ValueError(
                "secret_grace_seconds must not exceed secret_rotation_interval_seconds"
            )
        if self.secret_grace_seconds < self.access_token_ttl_seconds:
            raise ValueError("secret_grace_seconds must be at least access_token_ttl_seconds")
        if not self.password_pepper and not self.test_mode:
            logger.warning(
                "password_pepper_missing",
                message="PASSWORD_PEPPER is empty; hashes are salted but not peppered",
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
