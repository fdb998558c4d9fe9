from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prodauth.api.error_handling import register_exception_handlers
from prodauth.api.routes import router
from prodauth.config import Settings
from prodauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release store connections on shutdown."""
    from prodauth.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="prodauth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    # credentials are allowed, so the origin list must never be a wildcard
    return [
        origin.strip()
        for origin in _settings.frontend_origin.split(",")
        if origin.strip() and origin.strip() != "*"
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the client's X-Request-ID header when present and is
    echoed back on the response so log lines can be matched to requests.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # auth responses carry tokens and must never be cached
    if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    if request.url.scheme == "https" and _settings.secure_cookies:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


app.include_router(router)
register_exception_handlers(app)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and version info."""
    from prodauth.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": {
            "database": {"status": "healthy" if db_ok else "unhealthy", "type": store_type}
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
