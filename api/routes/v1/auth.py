"""
api/routes/v1/auth.py -- Login, token refresh, logout and self-service endpoints.

Routes:
  POST /api/v1/auth/login              -- email/password login; sets token cookies
  POST /api/v1/auth/refresh            -- rotate refresh token (body or cookie)
  POST /api/v1/auth/logout             -- revoke presented tokens, clear cookies; always 200
  GET  /api/v1/auth/me                 -- current identity (requires auth)
  POST /api/v1/auth/change-password    -- change own password (requires auth)
  GET  /api/v1/auth/sessions           -- list own live sessions (requires auth)
  POST /api/v1/auth/logout-all         -- end all own sessions but this one (requires auth)

Security:
  [H2] POST /login and POST /refresh are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() goes through the Authenticator, which provides
       timing equalization for unknown emails -- never inline a lookup here.
  [M5] Cache-Control: no-store on every response that carries tokens.

Failures from the auth core propagate as AuthError subclasses and are
rendered by the AuthError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RevokedSessionsResponse,
    SessionResponse,
    TokenResponse,
    UserSummary,
)
from auth.dependencies import Principal, extract_token, get_current_principal
from auth.errors import NotFoundError, TokenMalformedError
from auth.models import TokenPair
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/login:            public
# - POST /api/v1/auth/refresh:          public -- the refresh token is the credential
# - POST /api/v1/auth/logout:           public -- idempotent, acts only on presented tokens
# - GET  /api/v1/auth/me:               requires auth (get_current_principal)
# - POST /api/v1/auth/change-password:  requires auth (get_current_principal)
# - GET  /api/v1/auth/sessions:         requires auth (get_current_principal)
# - POST /api/v1/auth/logout-all:       requires auth (get_current_principal)
router = APIRouter()

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set access and refresh cookies.

    Unknown email and wrong password both produce the same 401
    invalid_credentials body; lockout and inactive status produce 403.
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=request.headers.get("User-Agent", ""),
    )
    content = LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.access_expires_in,
        user=UserSummary.from_identity(result.identity, result.permissions),
    )
    resp = JSONResponse(status_code=200, content=content.model_dump(mode="json", by_alias=True))
    _set_token_cookies(request, resp, result.tokens)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange a refresh token for a new pair bound to the same session."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise TokenMalformedError(reason="missing_refresh_token")
    service: AuthService = request.app.state.auth_service
    tokens = service.refresh(token)
    content = TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.access_expires_in,
    )
    resp = JSONResponse(status_code=200, content=content.model_dump(mode="json", by_alias=True))
    _set_token_cookies(request, resp, tokens)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest | None = None) -> JSONResponse:
    """Revoke whichever presented tokens are still valid and clear cookies.

    Succeeds with nothing to revoke, so clients can call it unconditionally.
    """
    service: AuthService = request.app.state.auth_service
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    service.logout(access_token=extract_token(request), refresh_token=refresh_token)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    _clear_token_cookies(request, resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the current identity with the permission snapshot from its token."""
    identity = request.app.state.identity_store.get_by_id(principal.identity_id)
    if identity is None:
        raise NotFoundError("User not found.", reason="identity_deleted")
    summary = UserSummary.from_identity(identity, principal.permissions)
    return MeResponse(**summary.model_dump(), session_id=principal.session_id)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Change the caller's password. Every other session of the caller is ended."""
    service: AuthService = request.app.state.auth_service
    service.change_password(
        principal.identity_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return MessageResponse(message="Password changed.")


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, principal: Principal = Depends(get_current_principal)) -> list[SessionResponse]:
    sessions = request.app.state.sessions.list_by_identity(principal.identity_id)
    return [SessionResponse.from_session(s, principal.session_id) for s in sessions]


@router.post("/auth/logout-all", response_model=RevokedSessionsResponse)
def logout_all(request: Request, principal: Principal = Depends(get_current_principal)) -> RevokedSessionsResponse:
    """End every session of the caller except the one making this request."""
    service: AuthService = request.app.state.auth_service
    revoked = service.logout_everywhere(principal.identity_id, keep_session_id=principal.session_id)
    return RevokedSessionsResponse(revoked=revoked)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _set_token_cookies(request: Request, response: JSONResponse, tokens: TokenPair) -> None:
    """Write both tokens as httpOnly cookies.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (the default).
    max_age: matches each token's lifetime so cookie and token expire together.
    """
    secure = request.app.state.settings.secure_cookies
    response.set_cookie(
        ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=tokens.access_expires_in,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=tokens.refresh_expires_in,
    )


def _clear_token_cookies(request: Request, response: JSONResponse) -> None:
    secure = request.app.state.settings.secure_cookies
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.set_cookie(name, value="", httponly=True, samesite="lax", secure=secure, max_age=-1)
