"""
api/main.py -- FastAPI application entry point for ClinicGate auth.

Exposes the auth core (login, revocation, invites, role permissions) over
HTTP for the clinic front end and any other service that needs to check a
bearer token.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost; add_middleware() prepends, so the
last one registered wraps the rest):
  1. log_requests          -- access log line per request, rejected ones included
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan handles startup (auth store, bootstrap admin, purge task) and
shutdown (cancel purge task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.invites import router as invites_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthenticationError, AuthServiceError, StorageError
from auth.service import AuthService
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("clinicgate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_once(app: FastAPI) -> None:
    """Run one purge in a worker thread. Failures of any kind are logged, never raised."""
    try:
        removed = await asyncio.to_thread(app.state.auth.purge_expired_sessions)
    except Exception:
        logger.exception("Session purge failed; will retry next interval")
        return
    logger.debug("Session purge removed %d row(s)", removed)


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session rows every SESSION_PURGE_INTERVAL_SECONDS.

    Expired rows are already invisible to every read; this only keeps the
    table small. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_settings.session_purge_interval_seconds)
        await _purge_once(app)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. AuthService first -- creates the engine and any missing tables.
      2. Bootstrap admin second -- needs the tables.
      3. Purge task last -- references app.state.auth.
    """
    logger.info("ClinicGate API starting up")
    app.state.auth = AuthService.from_url(_settings.database_url, settings=_settings)
    admin = app.state.auth.ensure_admin()
    logger.info(
        "Auth initialized (bootstrap_admin_created=%s, enforce_session_rows=%s)",
        admin is not None,
        _settings.enforce_session_rows,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.auth.close()
    logger.info("ClinicGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ClinicGate API",
    description="Authentication, session revocation, invites and role permissions for the clinic app.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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
app.include_router(invites_router, prefix="/api/v1", tags=["Invites"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthServiceError)
async def auth_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Map the auth error taxonomy to its status code and envelope.

    Authentication failures all get one body, whatever the cause (unknown
    user, bad password, malformed, expired, revoked), so a client cannot tell
    which check failed. The cause is logged instead.
    """
    if isinstance(exc, AuthenticationError):
        logger.info(
            "Auth rejected %s %s kind=%s detail=%s",
            request.method,
            request.url.path,
            type(exc).__name__,
            exc.detail,
        )
        error = ErrorDetail(code=exc.error_code, message="Authentication required.")
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=error).model_dump(),
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
        error = ErrorDetail(code=exc.error_code, message="Service temporarily unavailable.")
    else:
        error = ErrorDetail(code=exc.error_code, message=exc.message, detail=exc.detail or None)
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=error).model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
