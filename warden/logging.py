from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field names whose values are credentials and are never rendered
_SECRET_FIELDS = (
    "password",
    "secret",
    "pepper",
    "authorization",
    "token",
    "backup_code",
    "mfa_code",
    "otp",
)
_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for this request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def hash_identifier(identifier: str) -> str:
    """Stable, non-reversible form of a login identifier.

    Used both as the lockout/rate-limit key component and in log fields, so
    raw emails and usernames never reach the store or the logs.
    """
    return hashlib.sha256(identifier.strip().lower().encode()).hexdigest()[:16]


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact credential fields and hash any raw identifier that slipped in."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key == "identifier" and isinstance(event_dict[key], str):
            event_dict["identifier_hash"] = hash_identifier(event_dict.pop(key))
        elif isinstance(event_dict[key], (str, bytes)) and any(
            field in lower_key for field in _SECRET_FIELDS
        ):
            event_dict[key] = _REDACTED
    return event_dict


def _configure_structlog(log_level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _scrub_credentials,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(os.getenv("LOG_LEVEL", "INFO"))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
