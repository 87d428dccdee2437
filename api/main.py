"""
api/main.py -- FastAPI application entry point for authcore.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests       -- method, path, status, latency, client host
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan builds the AuthService component graph on startup and tears it down
on shutdown, with a background task that sweeps expired sessions and stale
rate-limit keys in between.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import HealthResponse, MessageResponse, ThrottledResponse, ValidationErrorResponse
from api.routes.auth import router as auth_router
from auth.errors import StorageUnavailable
from auth.service import AuthService
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Reclaim expired sessions and idle rate-limit keys periodically.

    Expiry is enforced at read time, so this loop only bounds storage growth.
    The sweep runs in a worker thread so the event loop never blocks on the
    database. CancelledError from task.cancel() during shutdown propagates out
    of asyncio.sleep and unwinds the coroutine cleanly.
    """
    interval = app.state.settings.sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            counts = await asyncio.to_thread(app.state.auth_service.sweep)
            logger.info("Sweep complete: %s", counts)
        except StorageUnavailable:
            logger.warning("Sweep skipped: storage unavailable")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("authcore API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.auth_service = AuthService.from_settings(settings)
    logger.info(
        "Auth initialized (access_ttl=%ss, session_ttl=%ss, login_limit=%d/%ss)",
        settings.access_token_ttl_seconds,
        settings.session_ttl_seconds,
        settings.login_max_attempts,
        settings.login_window_seconds,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.auth_service.close()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Credential verification, session and token lifecycle, and role-based access control.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Paths and status codes only: no headers, bodies or cookies, which
# carry credentials.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is {"message": ...} (plus retryAfterSeconds on 429) so
# clients parse errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the per-IP flood guard trips.

    slowapi does not expose the remaining window on the exception; the limit
    granularity (e.g. "per minute") is the upper bound, so report that.
    """
    retry_after = int(exc.limit.limit.get_expiry())
    response = JSONResponse(
        status_code=429,
        content=ThrottledResponse(message="Too many requests", retry_after_seconds=retry_after).model_dump(
            by_alias=True
        ),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body or query params fail validation.

    Input values are stripped from the error list: a rejected password must
    not be echoed back.
    """
    errors = [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ValidationErrorResponse(message="Request validation failed", detail=str(errors)).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({"message": ...}).
    When detail is already a dict, use it directly as the body rather than
    stringifying it.
    """
    content = exc.detail if isinstance(exc.detail, dict) else MessageResponse(message=str(exc.detail)).model_dump()
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    """Return 503 without internal detail; the store already logged the cause."""
    logger.error("Storage unavailable on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content=MessageResponse(message="Service unavailable").model_dump())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=MessageResponse(message="Internal server error").model_dump())


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and database reachability."""
    components = {"app": "ok"}
    try:
        request.app.state.auth_service.users.has_users()
        components["database"] = "ok"
    except StorageUnavailable:
        components["database"] = "error"
    return HealthResponse(version=VERSION, components=components)
