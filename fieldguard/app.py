from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from fieldguard.api.error_handling import register_exception_handlers
from fieldguard.api.routes import router
from fieldguard.logging import get_logger, set_correlation_id
from fieldguard.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving; a bad signing key or TTL aborts startup."""
    from fieldguard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except StoreUnavailable as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="fieldguard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id from ``X-Request-ID`` or a fresh one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
def healthz():
    from fieldguard.service.runtime import get_runtime

    runtime = get_runtime()
    return JSONResponse(
        {
            "status": "ok",
            "version": __version__,
            "store": type(runtime.store).__name__,
            "redis": runtime.cache is not None,
        }
    )
