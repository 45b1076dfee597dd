from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from warden.api.schemas import ProblemDetail
from warden.config import get_settings
from warden.logging import get_correlation_id, get_logger
from warden.service.errors import ServiceError
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "authentication_required",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "store_unavailable",
}

_STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Validation Error",
    429: "Too Many Requests",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _problem_response(
    request: Request,
    status_code: int,
    *,
    code: str,
    title: str,
    detail: str,
    errors: Optional[List[str]] = None,
    extra: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    base_url = get_settings().problem_type_base_url
    problem = ProblemDetail(
        type=f"{base_url}{code.replace('_', '-')}",
        title=title,
        status=status_code,
        detail=detail,
        instance=request.url.path,
        request_id=get_correlation_id(),
        code=code,
        errors=errors or None,
        extra=extra or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        headers=headers or None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every rejection as the problem envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _problem_response(
            request,
            exc.status_code,
            code=exc.error_code,
            title=exc.title,
            detail=exc.message,
            errors=getattr(exc, "errors", None),
            extra=exc.detail,
            headers=exc.headers,
        )

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=exc.message,
        )
        return _problem_response(
            request,
            503,
            code="store_unavailable",
            title=_STATUS_TITLES[503],
            detail="Authentication backend temporarily unavailable",
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        messages = [
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return _problem_response(
            request,
            422,
            code="validation_error",
            title=_STATUS_TITLES[422],
            detail="Request body failed validation",
            errors=messages,
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _problem_response(
            request,
            exc.status_code,
            code=_STATUS_TO_CODE.get(exc.status_code, "server_error"),
            title=_STATUS_TITLES.get(exc.status_code, "Error"),
            detail=message,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _problem_response(
            request,
            500,
            code="server_error",
            title=_STATUS_TITLES[500],
            detail="An unexpected error occurred",
        )
