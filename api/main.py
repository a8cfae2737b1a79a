"""
api/main.py -- FastAPI application entry point for LedgerGate Identity.

Exposes credential login, token refresh/revocation, sessions, invitations and
role/permission lookups over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one access-log line per request
  2. TrustedHostMiddleware -- rejects requests whose Host is not ALLOWED_HOSTS
  3. CORSMiddleware        -- credentialed CORS for CORS_ORIGINS only
  4. SlowAPIMiddleware     -- per-IP limits on the credential endpoints

Lifespan handles startup (settings, signing keys, stores, services, session
cleanup task) and shutdown (cancel cleanup task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.invitations import router as invitations_router
from api.routes.v1.roles import router as roles_router
from auth.authenticator import Authenticator
from auth.dependencies import Principal, get_current_principal
from auth.errors import AuthError
from auth.invitations import InvitationEngine
from auth.keys import SigningKeys, load_signing_keys
from auth.models import Identity
from auth.passwords import hash_password
from auth.permissions import PERMISSIONS, SYSTEM_ROLES, PermissionResolver
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import IdentityStore
from auth.tokens import TokenService
from cache.store import CacheStore
from core.config import Settings, get_settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ledgergate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_services(
    app: FastAPI,
    settings: Settings,
    keys: SigningKeys,
    store: IdentityStore,
    cache: CacheStore,
) -> None:
    """Build the auth core from its backing stores and attach it to app.state.

    Shared by the real lifespan and the test suite so both wire the same
    object graph. Handlers read everything from request.app.state.
    """
    resolver = PermissionResolver(store)
    sessions = SessionManager(cache, default_ttl_seconds=settings.session_ttl_seconds)
    tokens = TokenService(
        keys,
        cache,
        issuer=settings.jwt_issuer,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )
    authenticator = Authenticator(
        store,
        lockout_threshold=settings.lockout_threshold,
        lockout_minutes=settings.lockout_minutes,
    )
    app.state.settings = settings
    app.state.identity_store = store
    app.state.cache = cache
    app.state.permissions = resolver
    app.state.sessions = sessions
    app.state.tokens = tokens
    app.state.invitations = InvitationEngine(store, default_ttl_hours=settings.invitation_ttl_hours)
    app.state.auth_service = AuthService(
        store,
        authenticator,
        resolver,
        sessions,
        tokens,
        revoke_rotated_refresh=settings.revoke_rotated_refresh,
    )


def bootstrap_admin(store: IdentityStore, settings: Settings) -> str | None:
    """Create the first ORG_ADMIN when the users table is empty and credentials are configured.

    Returns the new identity id, or None if nothing was created.
    """
    if not (settings.bootstrap_admin_email and settings.bootstrap_admin_password):
        return None
    if store.has_identities():
        return None
    role = store.get_role_by_name("ORG_ADMIN")
    identity_id = store.create_identity(
        Identity(
            email=settings.bootstrap_admin_email,
            first_name="Administrator",
            password_hash=hash_password(settings.bootstrap_admin_password),
            role_id=role.id if role else None,
        )
    )
    logger.warning("Bootstrap administrator %s created; unset BOOTSTRAP_ADMIN_PASSWORD", identity_id)
    return identity_id


# ---------------------------------------------------------------------------
# Background session cleanup
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI) -> None:
    """Delete session records past their own expires_at once an hour.

    Cache TTLs already evict most records; this catches entries whose stored
    expiry is earlier than their cache TTL. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        try:
            await asyncio.to_thread(app.state.sessions.cleanup_expired)
        except RedisError:
            logger.exception("Session cleanup failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Signing keys first -- a bad key pair aborts startup before any
         store is opened (KeyConfigurationError).
      2. Relational store second -- schema created, system roles installed,
         optional bootstrap admin created.
      3. Cache third, then services, then the cleanup task, which references
         app.state.sessions.
    """
    settings = get_settings()
    logger.info("LedgerGate Identity starting up")
    keys = load_signing_keys(settings)
    store = IdentityStore(settings.database_url, timeout_seconds=settings.db_timeout_seconds)
    store.ensure_system_roles(PERMISSIONS, SYSTEM_ROLES)
    bootstrap_admin(store, settings)
    cache = CacheStore.from_url(settings.redis_url, timeout=settings.cache_timeout_seconds)
    configure_services(app, settings, keys, store, cache)
    logger.info("Auth core initialized (issuer=%s)", settings.jwt_issuer)
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app))

    yield

    # Shutdown
    app.state.cleanup_task.cancel()
    cache.close()
    store.close()
    logger.info("LedgerGate Identity shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LedgerGate Identity API",
    description="Credential login, RS256 tokens, sessions, invitations and role-based permissions.",
    version=_settings.version,
    lifespan=lifespan,
    # /docs and /redoc are re-registered below behind get_current_principal.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps each add_middleware() call around everything added before
# it, so the last registration sees the request first. Registered innermost
# first: SlowAPI, CORS, TrustedHost.
# ---------------------------------------------------------------------------

app.state.limiter = limiter  # SlowAPIMiddleware reads it from app.state
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Access log
#
# One line per request with status and latency. Registered last, so it also
# times requests that TrustedHost or SlowAPI reject.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(invitations_router, prefix="/api/v1", tags=["Invitations"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="LedgerGate Identity API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="LedgerGate Identity API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is {"error": {"code", "message", "detail"?}} whatever
# raised it.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an auth-core failure with its coarse code and public message.

    exc.reason says which factor failed and goes to the log only. Login
    must not disclose whether an email exists, so the body never varies
    with the reason.
    """
    logger.info(
        "%s %s -> %d %s (%s)", request.method, request.url.path, exc.status_code, exc.code, exc.reason or "-"
    )
    message = exc.public_message if exc.status_code in (401, 403) else exc.message
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=message)).model_dump(exclude_none=True),
    )
    response.headers["Cache-Control"] = "no-store"
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
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
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are left out of the detail so passwords never echo back.
    """
    fields = [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=", ".join(fields),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
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
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus database and cache reachability."""
    components = {"app": "ok", "database": "ok", "cache": "ok"}
    try:
        with request.app.state.identity_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    try:
        request.app.state.cache.ping()
    except RedisError:
        logger.exception("Health check: cache unreachable")
        components["cache"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=request.app.state.settings.version, components=components)
