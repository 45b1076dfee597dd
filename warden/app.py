from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.logging import get_logger, set_correlation_id
from warden.service.runtime import get_runtime
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the secret rotation timer on startup and stop it on shutdown."""
    runtime = get_runtime()
    await runtime.startup()
    logger.info("warden_started", version=__version__)
    try:
        yield
    finally:
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)
register_exception_handlers(app)
app.include_router(router)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line and response with the request's correlation id."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/healthz", tags=["health"])
async def healthz():
    runtime = get_runtime()
    try:
        await runtime.store.ping()
    except StoreUnavailable as exc:
        logger.warning("healthz_store_unavailable", error=exc.message)
        return JSONResponse(
            status_code=503, content={"status": "degraded", "store": "unavailable"}
        )
    return {"status": "ok", "store": "ok", "version": __version__}
