"""
api/main.py -- FastAPI application entry point for the storefront auth API.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan wires the object graph by hand (store -> service -> guard) and tears
it down symmetrically. Nothing is resolved through a container: every
collaborator is constructed here and placed on app.state.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
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
from api.policies import API_PREFIX, ROUTE_POLICIES
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, HashingError, WeakPassword
from auth.guard import AccessGuard
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storefront.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- creates the schema; everything else reads through it.
      2. Service second -- needs the store and the configured secrets.
      3. Guard last -- verifies tokens with the service's issuer and loads
         subjects through the service.
      4. Bootstrap admin (optional) -- needs the service.
    """
    settings = get_settings()
    logger.info("Storefront auth API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.auth_service = AuthService.from_settings(settings, app.state.user_store)
    app.state.guard = AccessGuard(app.state.auth_service.issuer, app.state.auth_service, ROUTE_POLICIES)
    if settings.bootstrap_admin_email:
        created = await app.state.auth_service.bootstrap_admin(
            settings.bootstrap_admin_email, settings.bootstrap_admin_password
        )
        if created is not None:
            logger.info("Bootstrap admin account created")
    logger.info("Auth initialized (db=%s)", settings.database_url.split("://", 1)[0])

    yield

    # Shutdown
    app.state.user_store.close()
    logger.info("Storefront auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storefront Auth API",
    description="Registration, login, token rotation, lockout and role-based access for the storefront.",
    version=API_VERSION,
    lifespan=lifespan,
    # Schema browsing is a development aid only.
    docs_url="/docs" if _settings.debug else None,
    redoc_url="/redoc" if _settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request gets a request
# id (client-supplied X-Request-ID or a fresh one) that flows into the
# RequestContext passed to the orchestrator and is echoed on the response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", "")[:64] or uuid.uuid4().hex
    request.state.request_id = request_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "%s %s %d %.1fms %s %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render the auth taxonomy. Messages are caller-safe by construction."""
    if isinstance(exc, HashingError):
        logger.error("Hashing failure on %s %s", request.method, request.url.path)
    detail = "; ".join(exc.errors) if isinstance(exc, WeakPassword) else None
    response = _error(exc.status_code, exc.code, exc.message, detail)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed back -- never the submitted
    values, which may be passwords.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return _error(422, "validation_error", "Request validation failed.", problems)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable and
# never passes through the access guard. No rate limit applied -- health
# checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get(f"{API_PREFIX}/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return API liveness, version and store reachability."""
    try:
        await asyncio.wait_for(
            asyncio.to_thread(request.app.state.user_store.ping),
            timeout=get_settings().store_timeout_seconds,
        )
        database = "ok"
    except Exception as exc:  # noqa: BLE001 -- health must report, not raise
        logger.warning("Health check: store unreachable: %s", exc)
        database = "error"
    status_code = 200 if database == "ok" else 503
    body = HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())
