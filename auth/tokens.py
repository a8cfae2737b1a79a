"""
auth/tokens.py -- RS256 access/refresh token issuance, validation, revocation.

Security design decisions:
  Signing: python-jose with RS256. The private key signs, the public key
       verifies. Keys come from an immutable SigningKeys value built once at
       startup (auth/keys.py) and handed to TokenService; this module never
       reads configuration itself.

  Claims: sub (identity id), role, permissions (sorted snapshot), sid
       (session id), jti (uuid4 hex), typ ("access" | "refresh"), iss, iat,
       exp. The permission snapshot is not re-checked until the token is
       re-issued, which bounds staleness by the access TTL.

  Validation order: structure -> signature/issuer -> claim shape -> kind ->
       expiry -> revocation list. Expiry is compared against the injected
       clock rather than jose's wall clock so tests can move time.

  Revocation: jwt:blacklist:<jti> -> "revoked" with TTL equal to the token's
       remaining lifetime. If the revocation store cannot be reached,
       validate() rejects the token (fail closed).

Layer rule: no imports from api/. The cache is injected.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from redis.exceptions import RedisError

from auth.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
    TokenRevokedError,
    TokenSignatureError,
)
from auth.keys import SigningKeys
from auth.models import Identity, TokenClaims, TokenKind, TokenPair

if TYPE_CHECKING:
    from cache.store import CacheStore

logger = logging.getLogger("ledgergate.tokens")

BLACKLIST_PREFIX = "jwt:blacklist:"
DEFAULT_ISSUER = "ledgergate-api"
DEFAULT_ACCESS_TTL = 15 * 60
DEFAULT_REFRESH_TTL = 7 * 24 * 60 * 60

_DECODE_OPTIONS = {
    # Any require_* flag switches verify_exp back on inside jose, so claim
    # presence is checked in _claims_from_payload instead.
    "verify_exp": False,  # checked against self.clock in decode()
    "verify_aud": False,
}

_REQUIRED_CLAIMS = ("sub", "sid", "jti", "typ", "iss", "iat", "exp")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    def __init__(
        self,
        keys: SigningKeys,
        cache: CacheStore,
        *,
        issuer: str = DEFAULT_ISSUER,
        access_ttl_seconds: int = DEFAULT_ACCESS_TTL,
        refresh_ttl_seconds: int = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.keys = keys
        self.cache = cache
        self.issuer = issuer
        self.ttls = {
            TokenKind.ACCESS: access_ttl_seconds,
            TokenKind.REFRESH: refresh_ttl_seconds,
        }
        self.clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        identity: Identity,
        session_id: str,
        permissions: Iterable[str],
        kind: TokenKind = TokenKind.ACCESS,
    ) -> str:
        """Sign a token of the given kind for identity bound to session_id."""
        now = self.clock()
        issued_at = int(now.timestamp())
        payload = {
            "sub": identity.id,
            "role": identity.role_name,
            "permissions": sorted(set(permissions)),
            "sid": session_id,
            "jti": uuid.uuid4().hex,
            "typ": kind.value,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": issued_at + self.ttls[kind],
        }
        return jwt.encode(payload, self.keys.private_pem, algorithm=self.keys.algorithm)

    def issue_pair(self, identity: Identity, session_id: str, permissions: Iterable[str]) -> TokenPair:
        permissions = frozenset(permissions)
        return TokenPair(
            access_token=self.issue(identity, session_id, permissions, TokenKind.ACCESS),
            refresh_token=self.issue(identity, session_id, permissions, TokenKind.REFRESH),
            access_expires_in=self.ttls[TokenKind.ACCESS],
            refresh_expires_in=self.ttls[TokenKind.REFRESH],
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def decode(self, token: str, expected_kind: TokenKind | None = None) -> TokenClaims:
        """Verify structure, signature, issuer, kind and expiry. No revocation check."""
        if not token or token.count(".") != 2:
            raise TokenMalformedError(reason="structure")
        try:
            jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenMalformedError(reason="header") from exc

        try:
            payload = jwt.decode(
                token,
                self.keys.public_pem,
                algorithms=[self.keys.algorithm],
                issuer=self.issuer,
                options=_DECODE_OPTIONS,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError(reason="expired") from exc
        except JWTClaimsError as exc:
            raise TokenMalformedError(reason="claims") from exc
        except JWTError as exc:
            raise TokenSignatureError(reason="signature") from exc

        claims = _claims_from_payload(payload)
        if expected_kind is not None and claims.kind != expected_kind:
            raise TokenMalformedError(reason="wrong_kind")
        if claims.expires_at <= self.clock():
            raise TokenExpiredError(reason="expired")
        return claims

    def validate(self, token: str, expected_kind: TokenKind | None = None) -> TokenClaims:
        """Return verified claims, or raise a TokenInvalidError subclass.

        Raises TokenMalformedError, TokenSignatureError, TokenExpiredError or
        TokenRevokedError.
        """
        claims = self.decode(token, expected_kind)
        if self.is_revoked(claims.jti):
            raise TokenRevokedError(reason="revoked")
        return claims

    def is_revoked(self, jti: str) -> bool:
        try:
            return self.cache.exists(BLACKLIST_PREFIX + jti)
        except RedisError as exc:
            logger.error("Revocation store unavailable, rejecting token: %s", exc)
            raise TokenInvalidError(reason="revocation_store_unavailable") from exc

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, claims: TokenClaims) -> bool:
        """Blacklist claims.jti until the token would have expired anyway.

        Returns False (and writes nothing) when the token is already expired.
        """
        remaining = (claims.expires_at - self.clock()).total_seconds()
        if remaining <= 0:
            return False
        self.cache.set(BLACKLIST_PREFIX + claims.jti, "revoked", ttl=math.ceil(remaining))
        logger.info("Revoked %s token %s for identity %s", claims.kind.value, claims.jti, claims.subject)
        return True

    def revoke_token(self, token: str) -> bool:
        """Revoke a raw token if it still validates. Invalid tokens are ignored."""
        try:
            claims = self.validate(token)
        except TokenInvalidError:
            return False
        return self.revoke(claims)


def _claims_from_payload(payload: dict) -> TokenClaims:
    missing = [name for name in _REQUIRED_CLAIMS if name not in payload]
    if missing:
        raise TokenMalformedError(reason=f"missing_claims:{','.join(missing)}")
    try:
        kind = TokenKind(payload["typ"])
        permissions = payload.get("permissions", [])
        if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
            raise TypeError("permissions must be a list of strings")
        return TokenClaims(
            subject=str(payload["sub"]),
            role=str(payload.get("role", "")),
            permissions=frozenset(permissions),
            session_id=str(payload["sid"]),
            jti=str(payload["jti"]),
            kind=kind,
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenMalformedError(reason="claim_shape") from exc
