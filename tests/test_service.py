"""
tests/test_service.py -- Login / refresh / logout / password change orchestration.

Wires the real components (store, authenticator, resolver, sessions, tokens)
over in-memory backends with one shared clock.
"""

from __future__ import annotations

import pytest

from auth.authenticator import Authenticator
from auth.errors import (
    CurrentPasswordMismatchError,
    PasswordMismatchError,
    SessionNotFoundError,
    TokenInvalidError,
    TokenRevokedError,
)
from auth.models import IdentityStatus, TokenKind
from auth.permissions import PermissionResolver
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.tokens import TokenService

PASSWORD = "correct-horse-battery"


@pytest.fixture
def service(store, cache, clock, signing_keys) -> AuthService:
    return AuthService(
        store,
        Authenticator(store, clock=clock),
        PermissionResolver(store),
        SessionManager(cache, clock=clock),
        TokenService(signing_keys, cache, issuer="ledgergate-test", clock=clock),
    )


@pytest.fixture
def teller(make_identity):
    return make_identity("teller@ledgergate.test", PASSWORD, role="ORG_USER")


class TestLogin:
    def test_login_issues_session_bound_tokens(self, service, teller) -> None:
        result = service.login("teller@ledgergate.test", PASSWORD, ip="10.2.0.1", user_agent="pytest")
        assert result.identity.id == teller.id
        assert "clients:read" in result.permissions

        access = service.tokens.validate(result.tokens.access_token, TokenKind.ACCESS)
        refresh = service.tokens.validate(result.tokens.refresh_token, TokenKind.REFRESH)
        assert access.session_id == refresh.session_id == result.session.id
        assert access.permissions == result.permissions
        assert service.sessions.get(result.session.id).ip_address == "10.2.0.1"

    def test_failed_login_creates_nothing(self, service, teller) -> None:
        with pytest.raises(PasswordMismatchError):
            service.login("teller@ledgergate.test", "wrong-password")
        assert service.sessions.count_sessions() == 0


class TestRefresh:
    def test_rotation_revokes_presented_refresh_token(self, service, teller, clock) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        clock.advance(minutes=5)
        pair = service.refresh(login.tokens.refresh_token)

        assert pair.refresh_token != login.tokens.refresh_token
        assert service.tokens.validate(pair.access_token).session_id == login.session.id
        with pytest.raises(TokenRevokedError):
            service.refresh(login.tokens.refresh_token)

    def test_rotation_without_revocation(self, store, cache, clock, signing_keys, teller) -> None:
        service = AuthService(
            store,
            Authenticator(store, clock=clock),
            PermissionResolver(store),
            SessionManager(cache, clock=clock),
            TokenService(signing_keys, cache, issuer="ledgergate-test", clock=clock),
            revoke_rotated_refresh=False,
        )
        login = service.login("teller@ledgergate.test", PASSWORD)
        service.refresh(login.tokens.refresh_token)
        assert service.refresh(login.tokens.refresh_token).access_token

    def test_refresh_after_long_idle(self, service, teller, clock) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        clock.advance(minutes=31)
        first = service.refresh(login.tokens.refresh_token)
        clock.advance(days=6, hours=23)
        second = service.refresh(first.refresh_token)
        assert service.tokens.validate(second.access_token).session_id == login.session.id

    def test_refresh_fails_after_logout_of_that_session(self, service, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        service.logout(login.tokens.access_token)
        with pytest.raises(TokenInvalidError):
            service.refresh(login.tokens.refresh_token)

    def test_refresh_picks_up_new_permissions(self, service, store, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        store.grant_permission(teller.role_id, "reports:read")
        pair = service.refresh(login.tokens.refresh_token)
        assert "reports:read" in service.tokens.validate(pair.access_token).permissions
        assert "reports:read" not in service.tokens.validate(login.tokens.access_token).permissions

    def test_access_token_cannot_refresh(self, service, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        with pytest.raises(TokenInvalidError):
            service.refresh(login.tokens.access_token)

    def test_refresh_fails_once_session_is_gone(self, service, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        service.logout_everywhere(teller.id)
        with pytest.raises(TokenInvalidError):
            service.refresh(login.tokens.refresh_token)

    def test_refresh_fails_for_deactivated_identity(self, service, store, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        store.update_identity(teller.id, status=IdentityStatus.SUSPENDED)
        with pytest.raises(TokenInvalidError):
            service.refresh(login.tokens.refresh_token)
        with pytest.raises(SessionNotFoundError):
            service.sessions.get(login.session.id)


class TestLogout:
    def test_logout_revokes_both_tokens_and_session(self, service, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        service.logout(login.tokens.access_token, login.tokens.refresh_token)
        with pytest.raises(TokenRevokedError):
            service.tokens.validate(login.tokens.access_token)
        with pytest.raises(TokenRevokedError):
            service.tokens.validate(login.tokens.refresh_token)
        with pytest.raises(SessionNotFoundError):
            service.sessions.get(login.session.id)

    def test_logout_is_idempotent(self, service, teller) -> None:
        login = service.login("teller@ledgergate.test", PASSWORD)
        service.logout(login.tokens.access_token)
        service.logout(login.tokens.access_token)
        service.logout(None, "garbage")
        service.logout()

    def test_logout_everywhere_keeps_current(self, service, teller) -> None:
        current = service.login("teller@ledgergate.test", PASSWORD)
        service.login("teller@ledgergate.test", PASSWORD)
        service.login("teller@ledgergate.test", PASSWORD)
        assert service.logout_everywhere(teller.id, keep_session_id=current.session.id) == 2
        assert [s.id for s in service.sessions.list_by_identity(teller.id)] == [current.session.id]


class TestChangePassword:
    def test_change_password_revokes_other_sessions(self, service, teller) -> None:
        current = service.login("teller@ledgergate.test", PASSWORD)
        service.login("teller@ledgergate.test", PASSWORD)

        revoked = service.change_password(teller.id, PASSWORD, "brand-new-passphrase", current.session.id)
        assert revoked == 1
        assert service.login("teller@ledgergate.test", "brand-new-passphrase").identity.id == teller.id
        with pytest.raises(PasswordMismatchError):
            service.login("teller@ledgergate.test", PASSWORD)

    def test_wrong_current_password(self, service, store, teller) -> None:
        with pytest.raises(CurrentPasswordMismatchError):
            service.change_password(teller.id, "not-my-password", "brand-new-passphrase")
        assert store.get_by_id(teller.id).failed_attempt_count == 0, "Change-password must not feed the lockout"
