"""
api/main.py -- FastAPI application entry point for keyfob.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the whole credential-to-token pipeline from Settings once at
startup and hangs it off app.state:

  app.state.identity_store     IdentityStore (users, roles, claims)
  app.state.refresh_store      InMemoryRefreshTokenStore | SqlRefreshTokenStore
  app.state.minter             TokenMinter (signing secret threaded in here)
  app.state.issuance           TokenIssuanceService
  app.state.role_provisioning  RoleProvisioningService
  app.state.user_provisioning  UserProvisioningService

A missing or short signing secret fails here, at startup, with SigningError
(or the Settings ValueError before it) -- never on a request.
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
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.token import router as token_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.authenticator import CredentialAuthenticator
from auth.claims import ClaimAssembler
from auth.errors import AuthError
from auth.issuance import TokenIssuanceService
from auth.provisioning import RoleProvisioningService, UserProvisioningService
from auth.refresh import InMemoryRefreshTokenStore, RefreshTokenStore, SqlRefreshTokenStore
from auth.store import IdentityStore
from auth.tokens import TokenMinter
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
logger = logging.getLogger("keyfob.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_refresh_store(settings: Settings) -> RefreshTokenStore:
    if settings.refresh_store == "sql":
        return SqlRefreshTokenStore(settings.database_url, ttl_seconds=settings.refresh_token_expire_seconds)
    return InMemoryRefreshTokenStore(ttl_seconds=settings.refresh_token_expire_seconds)


def configure_state(
    app: FastAPI,
    settings: Settings,
    identity_store: IdentityStore,
    refresh_store: RefreshTokenStore,
) -> None:
    """Assemble the token pipeline and provisioning services onto app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    object graph.
    """
    minter = TokenMinter(settings.secret_key)
    role_provisioning = RoleProvisioningService(identity_store, settings.allowed_roles)
    role_provisioning.ensure_roles(role_provisioning.allowed_roles)

    app.state.settings = settings
    app.state.identity_store = identity_store
    app.state.refresh_store = refresh_store
    app.state.minter = minter
    app.state.issuance = TokenIssuanceService(
        CredentialAuthenticator(identity_store),
        identity_store,
        ClaimAssembler(),
        minter,
        refresh_store,
        access_ttl=settings.access_token_expire_seconds,
        default_scope=settings.default_scope,
        allowed_client_ids=settings.allowed_client_ids,
    )
    app.state.role_provisioning = role_provisioning
    app.state.user_provisioning = UserProvisioningService(identity_store, role_provisioning)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Drop expired refresh tokens every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        removed = app.state.refresh_store.purge_expired()
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup; release them on shutdown."""
    logger.info("keyfob API starting up")
    settings = get_settings()
    identity_store = IdentityStore(
        settings.database_url,
        max_failed_attempts=settings.max_failed_attempts,
        lockout_seconds=settings.lockout_seconds,
    )
    refresh_store = build_refresh_store(settings)
    configure_state(app, settings, identity_store, refresh_store)
    logger.info(
        "Auth initialized (refresh_store=%s, roles=%s)",
        settings.refresh_store,
        ",".join(settings.allowed_roles),
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    identity_store.close()
    if isinstance(refresh_store, SqlRefreshTokenStore):
        refresh_store.close()
    logger.info("keyfob API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="keyfob",
    description="Credential verification, bearer-token issuance and role provisioning.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access-log line per request. Never logs headers or bodies (they carry credentials)."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    client = request.client.host if request.client else "-"
    logger.info("%s %s -> %d (%.1fms) from %s", request.method, request.url.path, response.status_code, elapsed_ms, client)
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(token_router, tags=["Token"])
app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every non-token error leaves as {"error": {"code", "message", "detail"}}.
# The token endpoint renders its own RFC 6749 bodies and never lets an
# AuthError reach these.
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    code: str,
    message: str,
    detail: object = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Domain errors (InvalidRole, UserNotFound, ...) carry their own code and status."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _envelope(exc.status_code, exc.code, exc.message, exc.detail())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = str(int(getattr(exc, "retry_after", 60)))
    return _envelope(429, "rate_limited", "Too many requests.", str(exc), headers={"Retry-After": retry_after})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and parameters are a 400, not FastAPI's default 422."""
    return _envelope(400, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass structured dict details (from auth.dependencies) through as the error body."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected failures: full trace to the log, nothing internal to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "An unexpected error occurred.")


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Liveness probe. No auth, no rate limit."""
    return HealthResponse(version=VERSION)
