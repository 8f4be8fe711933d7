from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tasksync.api.error_handling import register_exception_handlers
from tasksync.api.routes import router
from tasksync.api.schemas import Envelope
from tasksync.config import Settings
from tasksync.logging import get_correlation_id, get_logger, set_correlation_id
from tasksync.storage.errors import CacheUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from tasksync.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, environment=runtime.settings.environment.value)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except CacheUnavailable as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TaskSync Accounts", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # Session cookies need credentialed requests, so origins are never a wildcard
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The client's X-Request-ID is reused when present, otherwise a new UUID is
    generated. The ID is echoed back in the X-Request-ID response header.
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
    # Auth responses carry tokens; proxies must not keep them
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


@app.middleware("http")
async def add_api_version_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("API-Version", __version__)
    return response


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report cache reachability and the backends in use.

    Answers 503 when the cache is unreachable, since no account flow can
    proceed without it.
    """
    from tasksync.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {
        "store": {
            "status": "healthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }
    }

    cache_ok = False
    try:
        cache_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except CacheUnavailable as exc:
        logger.error("health_check_cache_failed", error=str(exc.cause))
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    envelope = Envelope(
        status="ok" if cache_ok else "error",
        data={
            "status": "healthy" if cache_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(status_code=200 if cache_ok else 503, content=envelope.model_dump())


register_exception_handlers(app)
app.include_router(router)
