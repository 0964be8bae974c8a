"""
api/main.py -- FastAPI application entry point for identity-core.

Exposes AuthService over HTTP. The adapter owns transport concerns only:
request validation, status codes, the error envelope, rate limiting and
request logging. Every business rule lives in auth/.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once at startup (settings -> store, codec,
hasher, recorder, notifier -> AuthService) and disposes the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.audit import AuditRecorder
from auth.clock import Clock, SystemClock
from auth.errors import (
    AuditWriteError,
    AuthError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
)
from auth.notifier import LoggingNotifier
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenCodec, TokenPolicy
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("identitycore.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


def configure_app_state(app: FastAPI, settings: Settings, store: AuthStore, clock: Clock | None = None) -> None:
    """Wire AuthService and its collaborators onto app.state.

    Called by lifespan at startup and by the test suite with an in-memory
    store and a controllable clock.
    """
    clock = clock or SystemClock()
    codec = TokenCodec(TokenPolicy.from_settings(settings), clock)
    app.state.auth_store = store
    app.state.token_codec = codec
    app.state.auth_service = AuthService(
        identities=store,
        settings=store,
        audit=AuditRecorder(store),
        tokens=codec,
        hasher=PasswordHasher(settings.bcrypt_rounds),
        notifier=LoggingNotifier(settings.app_base_url),
        clock=clock,
        audit_fail_open=settings.audit_fail_open,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth object graph on startup; dispose the store on shutdown."""
    logger.info("identity-core API starting up")
    configure_app_state(app, _settings, AuthStore(_settings.database_url))
    logger.info("Auth initialized (audit_fail_open=%s)", _settings.audit_fail_open)

    yield

    app.state.auth_store.close()
    logger.info("identity-core API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="identity-core API",
    description="Registration, login, token refresh, password reset and email verification.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order you want the request to meet
# them: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[AuthError], int] = {
    BadRequestError: 400,
    UnauthorizedError: 401,
    NotFoundError: 404,
    ConflictError: 409,
}


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto HTTP status codes."""
    return _error(_STATUS_BY_ERROR.get(type(exc), 400), exc.code, exc.message)


@app.exception_handler(AuditWriteError)
async def audit_error_handler(request: Request, exc: AuditWriteError) -> JSONResponse:
    """Only reachable with AUDIT_FAIL_OPEN=false: refuse the request rather than act unaudited."""
    logger.error("Audit write failed on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "audit_unavailable", "The request could not be recorded. Try again later.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint -- no auth, no rate limit
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    database = "ok" if request.app.state.auth_store.ping() else "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
