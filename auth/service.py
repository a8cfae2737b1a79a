"""
auth/service.py -- Login, refresh, logout and password change orchestration.

Ties the authenticator, permission resolver, session manager and token
service together. Each component stays single-purpose; the ordering rules
live here:

  login:    authenticate -> resolve permissions -> create session -> issue pair
  refresh:  validate refresh token -> session must be live -> identity must
            still be ACTIVE -> re-resolve permissions -> slide session ->
            revoke presented refresh jti (if configured) -> issue pair
  logout:   revoke whichever presented tokens still validate, delete session.
            Never fails.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.authenticator import Authenticator
from auth.errors import AuthError, CurrentPasswordMismatchError, TokenInvalidError
from auth.models import IdentityStatus, LoginResult, TokenKind, TokenPair
from auth.passwords import hash_password
from auth.permissions import PermissionResolver
from auth.sessions import SessionManager
from auth.store import IdentityStore
from auth.tokens import TokenService

logger = logging.getLogger("ledgergate.auth")


class AuthService:
    def __init__(
        self,
        store: IdentityStore,
        authenticator: Authenticator,
        resolver: PermissionResolver,
        sessions: SessionManager,
        tokens: TokenService,
        *,
        revoke_rotated_refresh: bool = True,
    ) -> None:
        self.store = store
        self.authenticator = authenticator
        self.resolver = resolver
        self.sessions = sessions
        self.tokens = tokens
        self.revoke_rotated_refresh = revoke_rotated_refresh

    def login(self, email: str, password: str, ip: str = "", user_agent: str = "") -> LoginResult:
        identity = self.authenticator.authenticate(email, password, ip or None)
        permissions = self.resolver.resolve(identity.id)
        session = self.sessions.create(identity, ip=ip, user_agent=user_agent)
        tokens = self.tokens.issue_pair(identity, session.id, permissions)
        return LoginResult(identity=identity, permissions=permissions, session=session, tokens=tokens)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token into a fresh pair bound to the same session.

        Any failure surfaces as a TokenInvalidError so the caller sees one 401.
        """
        claims = self.tokens.validate(refresh_token, expected_kind=TokenKind.REFRESH)
        try:
            session = self.sessions.get(claims.session_id)
        except AuthError as exc:
            raise TokenInvalidError(reason=f"session_{exc.code}") from exc
        if session.identity_id != claims.subject:
            raise TokenInvalidError(reason="session_subject_mismatch")

        identity = self.store.get_by_id(claims.subject)
        if identity is None or identity.status != IdentityStatus.ACTIVE:
            self.sessions.delete(session.id, identity_id=session.identity_id)
            raise TokenInvalidError(reason="identity_inactive")

        permissions = self.resolver.resolve(identity.id)
        self.sessions.refresh(session.id)
        if self.revoke_rotated_refresh:
            self.tokens.revoke(claims)
        logger.info("Tokens refreshed for identity %s", identity.id)
        return self.tokens.issue_pair(identity, session.id, permissions)

    def logout(self, access_token: str | None = None, refresh_token: str | None = None) -> None:
        session_ids: set[str] = set()
        for token in (access_token, refresh_token):
            if not token:
                continue
            try:
                claims = self.tokens.validate(token)
            except TokenInvalidError:
                continue
            self.tokens.revoke(claims)
            session_ids.add(claims.session_id)
        for session_id in session_ids:
            self.sessions.delete(session_id)
        if session_ids:
            logger.info("Logged out %d session(s)", len(session_ids))

    def logout_everywhere(self, identity_id: str, keep_session_id: str | None = None) -> int:
        return self.sessions.revoke_identity_sessions(identity_id, keep_session_id=keep_session_id)

    def change_password(
        self, identity_id: str, current_password: str, new_password: str, keep_session_id: str | None = None
    ) -> int:
        """Replace the password and end every other session. Returns sessions revoked."""
        identity = self.store.get_by_id(identity_id)
        if identity is None or not self.authenticator.verify_current_password(identity, current_password):
            raise CurrentPasswordMismatchError(reason="current_password")
        self.store.set_password(identity_id, hash_password(new_password))
        revoked = self.sessions.revoke_identity_sessions(identity_id, keep_session_id=keep_session_id)
        logger.info("Password changed for identity %s; %d other session(s) revoked", identity_id, revoked)
        return revoked
