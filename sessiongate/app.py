from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sessiongate.api.error_handling import register_exception_handlers
from sessiongate.api.routes import router
from sessiongate.config import Settings
from sessiongate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime at startup so a bad store config fails fast."""
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", frontend_origin=runtime.settings.frontend_origin)

    yield

    try:
        runtime.close()
    except Exception as exc:
        logger.error("runtime_close_failed", error_type=type(exc).__name__, error=str(exc))
    else:
        logger.info("runtime_closed")


app = FastAPI(title=_settings.app_name, version=__version__, lifespan=lifespan)


# Credentials are enabled, so the single frontend origin is listed explicitly.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # Responses may carry session cookies; proxies must not cache them.
    "Cache-Control": "no-store",
    "API-Version": __version__,
}


@app.middleware("http")
async def request_context(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) for logging and add security headers."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
def health() -> JSONResponse:
    """Liveness plus a storage round-trip."""
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"version": __version__}
    healthy = True
    try:
        runtime.store.get_user("00000000-0000-0000-0000-000000000000")
        checks["database"] = "ok"
    except Exception as exc:
        healthy = False
        checks["database"] = "unavailable"
        logger.error("health_check_database_failed", error=str(exc))
    checks["status"] = "healthy" if healthy else "unhealthy"
    return JSONResponse(status_code=200 if healthy else 503, content=checks)


def create_app() -> FastAPI:
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sessiongate.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3333")),
    )
