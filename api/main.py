"""
api/main.py -- FastAPI application entry point for the TodoMaster auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for the configured frontend origins
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan is the composition root: it builds the user store, the OAuth state
store, the security monitor, the lockout policy and the OAuth flow, and hangs
them on app.state. Nothing in auth/ or security/ is a module-level singleton,
so tests swap the whole graph by replacing the lifespan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth import router as oauth_router
from auth.errors import AuthServiceError
from auth.federation import OAuthFlow
from auth.lockout import LockoutPolicy
from auth.oauth import build_providers
from auth.state_store import OAuthStateStore
from auth.store import UserStore
from core.config import get_settings
from security.monitor import SecurityMonitor

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("todomaster.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


async def _report_loop(app: FastAPI, interval: float) -> None:
    """Log the trailing 24h security report every `interval` seconds and drop
    brute-force counters for IPs that have gone quiet.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        report = app.state.monitor.report(window_hours=24)
        summary = report["summary"]
        logger.info(
            "Security report: %d events, %d alerts (%d high, %d medium)",
            summary["total_events"],
            summary["total_alerts"],
            summary["high_priority_alerts"],
            summary["medium_priority_alerts"],
        )
        tracked = app.state.monitor.forget_stale_failures()
        logger.debug("Brute-force counters held for %d IPs", tracked)


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Drop abandoned OAuth flow states once per TTL."""
    while True:
        await asyncio.sleep(interval)
        removed = app.state.oauth_states.purge_expired()
        if removed:
            logger.info("Purged %d expired OAuth states", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build application resources on startup and release them on shutdown.

    Startup order matters: the OAuth state store shares the user store's
    engine, and the OAuth flow needs every other component.
    """
    settings = get_settings()
    logger.info("TodoMaster auth API starting up")

    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url)
    app.state.oauth_states = OAuthStateStore(app.state.user_store.engine, ttl=settings.oauth_state_ttl_seconds)
    app.state.monitor = SecurityMonitor(settings.security_log_dir)
    app.state.lockout_policy = LockoutPolicy(
        threshold=settings.lockout_threshold,
        duration=timedelta(seconds=settings.lockout_duration_seconds),
    )
    app.state.oauth_flow = OAuthFlow(
        app.state.user_store,
        app.state.oauth_states,
        app.state.monitor,
        build_providers(settings),
        timeout_seconds=settings.oauth_timeout_seconds,
    )
    logger.info(
        "Auth initialized (providers=%s, security logs in %s)",
        sorted(app.state.oauth_flow.providers) or "none",
        settings.security_log_dir,
    )

    app.state.report_task = asyncio.create_task(_report_loop(app, settings.security_report_interval_seconds))
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.oauth_state_ttl_seconds))

    yield

    app.state.report_task.cancel()
    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("TodoMaster auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TodoMaster API",
    description="Accounts, sign-in and account security for TodoMaster.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
#
# oauth_router has the /auth/{provider} pattern and must come after the
# fixed /auth/* paths.
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthServiceError)
async def auth_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Map auth-layer errors to the envelope. 423 responses also carry Retry-After."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, retry_after=exc.retry_after)
        ).model_dump(exclude_none=True),
    )
    if exc.retry_after is not None:
        response.headers["Retry-After"] = str(exc.retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many authentication attempts, please try again later.",
                detail=str(exc.detail),
            )
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first validation message and the full error list as detail."""
    errors = exc.errors()
    message = "Request validation failed."
    if errors:
        message = str(errors[0].get("msg", message)).removeprefix("Value error, ")
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message=message,
                detail="; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the server log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly here so it is reachable regardless of router state. No
# rate limit: load balancer checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
