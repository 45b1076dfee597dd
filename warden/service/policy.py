from __future__ import annotations

from typing import Any

from warden.config import FailurePolicy
from warden.logging import get_logger
from warden.service.errors import ServiceUnavailableError
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)


def handle_store_outage(
    policy: FailurePolicy,
    exc: StoreUnavailable,
    *,
    component: str,
    operation: str,
    **context: Any,
) -> None:
    """Apply the configured outage policy for a failed store call.

    Fail-closed raises ``ServiceUnavailableError`` so the request is denied.
    Fail-open logs and returns, leaving the caller to continue with its
    permissive fallback.
    """
    if policy is FailurePolicy.CLOSED:
        logger.error(
            f"{component}_store_unavailable_fail_closed",
            operation=operation,
            error=exc.message,
            **context,
        )
        raise ServiceUnavailableError(
            "Authentication backend temporarily unavailable",
            detail={"component": component},
        ) from exc
    logger.warning(
        f"{component}_store_unavailable_fail_open",
        operation=operation,
        error=exc.message,
        **context,
    )
