"""
tests/test_invitations.py -- Invitation engine state machine.

Covers:
  - create: token shape, conflicts with identities and active invitations
  - validate: not found / accepted / cancelled / expired
  - accept: creates an ACTIVE identity bound to the role, exactly once
  - accept: promotes a PENDING_VERIFICATION placeholder in place
  - cancel, resend and list (with effective EXPIRED status)
"""

from __future__ import annotations

import re
from datetime import timedelta

import pytest

from auth.authenticator import Authenticator
from auth.errors import (
    ConflictError,
    InvitationAlreadyAcceptedError,
    InvitationCancelledError,
    InvitationExpiredError,
    InvitationNotFoundError,
    RoleNotFoundError,
)
from auth.invitations import InvitationEngine, build_invite_url
from auth.models import Identity, IdentityStatus, InvitationStatus, Profile

PROFILE = Profile(first_name="Noor", last_name="Haddad", department="Treasury")
NEW_PASSWORD = "n3w-invitee-password"


@pytest.fixture
def engine(store, clock) -> InvitationEngine:
    return InvitationEngine(store, clock=clock)


@pytest.fixture
def inviter(make_identity):
    return make_identity("inviter@ledgergate.test", role="ORG_ADMIN")


@pytest.fixture
def teller_role(store):
    return store.get_role_by_name("ORG_USER")


class TestCreate:
    def test_create_pending_invitation(self, engine, inviter, teller_role, clock) -> None:
        invitation = engine.create("New.Hire@LedgerGate.test", teller_role.id, inviter.id)
        assert invitation.id
        assert invitation.email == "new.hire@ledgergate.test"
        assert invitation.status == InvitationStatus.PENDING
        assert re.fullmatch(r"[0-9a-f]{64}", invitation.token), "Token must be 32 random bytes as hex"
        assert invitation.expires_at == clock.now + timedelta(hours=72)

    def test_custom_ttl(self, engine, inviter, teller_role, clock) -> None:
        invitation = engine.create("short@ledgergate.test", teller_role.id, inviter.id, ttl_hours=4)
        assert invitation.expires_at == clock.now + timedelta(hours=4)

    def test_conflict_with_existing_identity(self, engine, inviter, teller_role) -> None:
        with pytest.raises(ConflictError):
            engine.create("inviter@ledgergate.test", teller_role.id, inviter.id)

    def test_conflict_with_active_invitation(self, engine, inviter, teller_role) -> None:
        engine.create("twice@ledgergate.test", teller_role.id, inviter.id)
        with pytest.raises(ConflictError):
            engine.create("TWICE@ledgergate.test", teller_role.id, inviter.id)

    def test_expired_invitation_does_not_block_a_new_one(self, engine, inviter, teller_role, clock) -> None:
        engine.create("lapsed@ledgergate.test", teller_role.id, inviter.id)
        clock.advance(hours=73)
        assert engine.create("lapsed@ledgergate.test", teller_role.id, inviter.id).status == InvitationStatus.PENDING

    def test_placeholder_identity_does_not_conflict(self, engine, inviter, teller_role, make_identity) -> None:
        make_identity("placeholder@ledgergate.test", status=IdentityStatus.PENDING_VERIFICATION)
        assert engine.create("placeholder@ledgergate.test", teller_role.id, inviter.id).id

    def test_unknown_role(self, engine, inviter) -> None:
        with pytest.raises(RoleNotFoundError):
            engine.create("norole@ledgergate.test", 9999, inviter.id)


class TestValidate:
    def test_summary(self, engine, inviter, teller_role) -> None:
        invitation = engine.create("check@ledgergate.test", teller_role.id, inviter.id)
        summary = engine.validate(invitation.token)
        assert summary.email == "check@ledgergate.test"
        assert summary.role_name == "ORG_USER"
        assert summary.invited_by == inviter.id

    def test_unknown_token(self, engine) -> None:
        with pytest.raises(InvitationNotFoundError):
            engine.validate("0" * 64)

    def test_expired(self, engine, inviter, teller_role, clock) -> None:
        invitation = engine.create("late@ledgergate.test", teller_role.id, inviter.id)
        clock.advance(hours=72)
        with pytest.raises(InvitationExpiredError):
            engine.validate(invitation.token)

    def test_cancelled(self, engine, inviter, teller_role) -> None:
        invitation = engine.create("cancelled@ledgergate.test", teller_role.id, inviter.id)
        engine.cancel(invitation.id)
        with pytest.raises(InvitationCancelledError):
            engine.validate(invitation.token)


class TestAccept:
    def test_creates_active_identity_with_role(self, engine, store, inviter, teller_role, clock) -> None:
        invitation = engine.create("joiner@ledgergate.test", teller_role.id, inviter.id)
        result = engine.accept(invitation.token, PROFILE, NEW_PASSWORD)

        assert result.created is True
        assert result.email == "joiner@ledgergate.test"
        assert result.role == "ORG_USER"
        identity = store.get_by_id(result.user_id)
        assert identity.status == IdentityStatus.ACTIVE
        assert identity.role_id == teller_role.id
        assert identity.first_name == "Noor"
        assert identity.department == "Treasury"
        assert identity.invited_by == inviter.id

        stored = store.get_invitation_by_id(invitation.id)
        assert stored.status == InvitationStatus.ACCEPTED
        assert stored.accepted_by == result.user_id

        authenticator = Authenticator(store, clock=clock)
        assert authenticator.authenticate("joiner@ledgergate.test", NEW_PASSWORD).id == result.user_id

    def test_email_taken_between_check_and_write(
        self, engine, store, inviter, teller_role, make_identity, monkeypatch
    ) -> None:
        invitation = engine.create("racer@ledgergate.test", teller_role.id, inviter.id)
        make_identity("racer@ledgergate.test")
        # The pre-check misses the identity, as it would for a concurrent insert.
        monkeypatch.setattr(store, "get_by_email", lambda email: None)

        with pytest.raises(ConflictError):
            engine.accept(invitation.token, PROFILE, NEW_PASSWORD)
        assert store.get_invitation_by_id(invitation.id).status == InvitationStatus.PENDING

    def test_accept_is_exactly_once(self, engine, inviter, teller_role) -> None:
        invitation = engine.create("once@ledgergate.test", teller_role.id, inviter.id)
        engine.accept(invitation.token, PROFILE, NEW_PASSWORD)
        with pytest.raises(InvitationAlreadyAcceptedError):
            engine.accept(invitation.token, PROFILE, NEW_PASSWORD)

    def test_store_claim_is_conditional(self, engine, store, inviter, teller_role) -> None:
        """A claim against an invitation that is no longer PENDING writes nothing."""
        invitation = engine.create("race@ledgergate.test", teller_role.id, inviter.id)
        engine.accept(invitation.token, PROFILE, NEW_PASSWORD)
        loser = Identity(email="race-loser@ledgergate.test", role_id=teller_role.id)
        assert store.accept_invitation(invitation.id, loser, promote=False) is False
        assert store.get_by_email("race-loser@ledgergate.test") is None

    def test_accept_after_expiry(self, engine, inviter, teller_role, clock) -> None:
        invitation = engine.create("expired@ledgergate.test", teller_role.id, inviter.id)
        clock.advance(hours=72, seconds=1)
        with pytest.raises(InvitationExpiredError):
            engine.accept(invitation.token, PROFILE, NEW_PASSWORD)

    def test_promotes_placeholder(self, engine, store, inviter, teller_role, make_identity) -> None:
        placeholder = make_identity(
            "promote@ledgergate.test", role="AGENT_USER", status=IdentityStatus.PENDING_VERIFICATION
        )
        invitation = engine.create("promote@ledgergate.test", teller_role.id, inviter.id)
        result = engine.accept(invitation.token, PROFILE, NEW_PASSWORD)

        assert result.created is False
        assert result.user_id == placeholder.id
        identity = store.get_by_id(placeholder.id)
        assert identity.status == IdentityStatus.ACTIVE
        assert identity.role_name == "ORG_USER", "Role comes from the invitation"
        assert identity.version > placeholder.version

    def test_conflict_when_real_identity_appeared(self, engine, inviter, teller_role, make_identity) -> None:
        invitation = engine.create("sneaky@ledgergate.test", teller_role.id, inviter.id)
        make_identity("sneaky@ledgergate.test")
        with pytest.raises(ConflictError):
            engine.accept(invitation.token, PROFILE, NEW_PASSWORD)


class TestCancelResendList:
    def test_cancel_accepted_is_rejected(self, engine, inviter, teller_role) -> None:
        invitation = engine.create("done@ledgergate.test", teller_role.id, inviter.id)
        engine.accept(invitation.token, PROFILE, NEW_PASSWORD)
        with pytest.raises(InvitationAlreadyAcceptedError):
            engine.cancel(invitation.id)

    def test_cancel_unknown(self, engine) -> None:
        with pytest.raises(InvitationNotFoundError):
            engine.cancel("no-such-invitation")

    def test_resend_rotates_token_and_revives(self, engine, inviter, teller_role, clock) -> None:
        invitation = engine.create("resend@ledgergate.test", teller_role.id, inviter.id)
        old_token = invitation.token
        engine.cancel(invitation.id)
        clock.advance(hours=100)

        resent = engine.resend(invitation.id)
        assert resent.token != old_token
        assert resent.status == InvitationStatus.PENDING
        assert resent.expires_at == clock.now + timedelta(hours=72)
        with pytest.raises(InvitationNotFoundError):
            engine.validate(old_token)
        assert engine.validate(resent.token).email == "resend@ledgergate.test"

    def test_resend_refused_while_another_invitation_is_live(self, engine, inviter, teller_role) -> None:
        first = engine.create("twice@ledgergate.test", teller_role.id, inviter.id)
        engine.cancel(first.id)
        second = engine.create("twice@ledgergate.test", teller_role.id, inviter.id)

        with pytest.raises(ConflictError):
            engine.resend(first.id)
        live = engine.list(status=InvitationStatus.PENDING, email="twice@ledgergate.test")
        assert [i.id for i in live] == [second.id], "Only one invitation per email may be usable"

    def test_resend_own_pending_invitation_is_allowed(self, engine, inviter, teller_role) -> None:
        invitation = engine.create("again@ledgergate.test", teller_role.id, inviter.id)
        assert engine.resend(invitation.id).token != invitation.token

    def test_resend_refused_once_email_has_an_identity(self, engine, inviter, teller_role, make_identity) -> None:
        invitation = engine.create("joined@ledgergate.test", teller_role.id, inviter.id)
        engine.cancel(invitation.id)
        make_identity("joined@ledgergate.test")
        with pytest.raises(ConflictError):
            engine.resend(invitation.id)

    def test_list_filters_by_effective_status(self, engine, inviter, teller_role, clock) -> None:
        stale = engine.create("stale@ledgergate.test", teller_role.id, inviter.id, ttl_hours=1)
        clock.advance(hours=2)
        fresh = engine.create("fresh@ledgergate.test", teller_role.id, inviter.id)

        assert [i.id for i in engine.list(status=InvitationStatus.EXPIRED)] == [stale.id]
        assert [i.id for i in engine.list(status=InvitationStatus.PENDING)] == [fresh.id]
        assert [i.id for i in engine.list(email="FRESH@ledgergate.test")] == [fresh.id]
        assert len(engine.list()) == 2


def test_invite_url() -> None:
    assert build_invite_url("https://app.example.test/", "abc") == "https://app.example.test/register?token=abc"
