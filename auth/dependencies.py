"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Token sources, in priority order:
  1. "access_token" cookie -- set by POST /api/v1/auth/login for browsers.
  2. Authorization: Bearer <token> header -- API clients.

Only access tokens are accepted here; a refresh token presented as a bearer
credential is rejected as malformed.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_permission(code) wraps get_current_principal() and raises
ForbiddenError (rendered as 403) unless the token's permission snapshot
contains exactly that code.

The verified Principal is also stored on request.state.principal so
middleware and handlers further down can read it without re-validating.

Layer rule: no imports from cache/. auth/dependencies.py may import from
fastapi because this module is part of the FastAPI dependency injection
system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.errors import ForbiddenError, TokenInvalidError
from auth.models import TokenClaims, TokenKind

logger = logging.getLogger("ledgergate.auth")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as asserted by a verified access token."""

    identity_id: str
    role: str
    permissions: frozenset[str]
    session_id: str
    claims: TokenClaims

    def has(self, code: str) -> bool:
        return code in self.permissions


def extract_token(request: Request) -> str | None:
    token = request.cookies.get("access_token")
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request from cookie or Bearer header.

    Returns the Principal on success, None on any failure. Never raises --
    callers that need a hard 401 should use get_current_principal().
    """
    cached = getattr(request.state, "principal", None)
    if cached is not None:
        return cached

    token = extract_token(request)
    if not token:
        return None
    try:
        claims = request.app.state.tokens.validate(token, expected_kind=TokenKind.ACCESS)
    except TokenInvalidError as exc:
        logger.info("Rejected access token on %s: %s", request.url.path, exc.reason)
        return None

    principal = Principal(
        identity_id=claims.subject,
        role=claims.role,
        permissions=claims.permissions,
        session_id=claims.session_id,
        claims=claims,
    )
    request.state.principal = principal
    return principal


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_permission(code: str) -> Callable[[Request], Principal]:
    """Dependency factory: require an exact permission code.

    Use as a FastAPI dependency:
        @router.post("/invitations")
        async def route(principal: Principal = Depends(require_permission("users:invite"))): ...
    """

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)
        if not principal.has(code):
            logger.info("Identity %s denied %s (missing %s)", principal.identity_id, request.url.path, code)
            raise ForbiddenError(reason=f"missing {code}")
        return principal

    dependency.__name__ = f"require_{code.replace(':', '_')}"
    return dependency
