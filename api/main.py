"""
api/main.py -- FastAPI application entry point for Turnstile.

Run with:      uvicorn asgi:app --reload

Middleware stack (registration order; Starlette wraps the last one outermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once (Database -> stores -> codec/hasher ->
AuthService) and starts the expired-session sweep; shutdown cancels the
sweep and disposes of the engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError, ErrorKind
from auth.service import build_auth_service
from auth.store import Database
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
logger = logging.getLogger("turnstile.api")

# ---------------------------------------------------------------------------
# Error kind -> HTTP status
# ---------------------------------------------------------------------------

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.DUPLICATE_EMAIL: 409,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.INVALID_OR_EXPIRED_TOKEN: 401,
    ErrorKind.TOKEN_INVALIDATED: 401,
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.INCORRECT_OLD_PASSWORD: 400,
    ErrorKind.PASSWORD_UNCHANGED: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.MISSING_TOKEN: 401,
    ErrorKind.PERSISTENCE_ERROR: 503,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.EXPIRED_TOKEN: 401,
    ErrorKind.MALFORMED_TOKEN: 401,
    ErrorKind.INVALID_ACCESS_TOKEN: 401,
    ErrorKind.INVALIDATE_FAILURE: 503,
}


def status_for(kind: ErrorKind) -> int:
    return _STATUS_BY_KIND.get(kind, 400)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Delete expired sessions every `interval` seconds.

    Deleting expired rows is idempotent, so this needs no coordination with
    request handlers or with other workers running the same loop. Each
    sweep runs in a worker thread so a lock wait never stalls the event
    loop, and a failed sweep is logged and retried on the next interval.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(_sweep_once, app)
        except (AuthError, SQLAlchemyError):
            logger.warning("Session sweep failed; retrying next interval", exc_info=True)


def _sweep_once(app: FastAPI) -> int:
    state = app.state
    with state.db.transaction(timeout=state.settings.transaction_timeout_seconds) as conn:
        return state.auth_service.sweep_expired_sessions(conn)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build shared resources on startup and release them on shutdown."""
    settings = get_settings()
    logger.info("Turnstile API starting up")
    app.state.settings = settings
    app.state.db = Database(settings.database_url)
    app.state.auth_service = build_auth_service(settings)
    app.state.codec = app.state.auth_service.codec
    logger.info("Database initialized")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.session_sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    app.state.db.close()
    logger.info("Turnstile API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Turnstile API",
    description="Authentication, session rotation and user management.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
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
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a classified auth failure to its status code and envelope."""
    status = status_for(exc.kind)
    if status >= 500:
        logger.error("%s on %s %s", exc.kind.value, request.method, request.url.path)
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.kind.value, message=exc.message, detail=exc.detail or None)
        ).model_dump(),
        headers={"Cache-Control": "no-store"},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc))
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body or params fail validation.

    Only field locations and messages are echoed back -- the raw input may
    contain a password.
    """
    errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code=ErrorKind.VALIDATION_FAILED.value,
                message="Request validation failed.",
                detail={"errors": errors},
            )
        ).model_dump(),
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
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint -- no auth, no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    db_ok = request.app.state.db.ping()
    return HealthResponse(
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
