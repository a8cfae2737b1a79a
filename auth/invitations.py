"""
auth/invitations.py -- Single-use invitation onboarding.

Lifecycle (stored status):

    PENDING --accept--> ACCEPTED          (terminal)
    PENDING --cancel--> CANCELLED --resend--> PENDING
    PENDING --resend--> PENDING           (fresh token, fresh expiry)

EXPIRED is never written. A PENDING invitation whose expires_at has passed
reads as EXPIRED through Invitation.effective_status(); resend() revives it.

Tokens are secrets.token_hex(32): 64 hex characters, 256 bits. accept()
consumes a token exactly once: the store claims the row with a conditional
PENDING -> ACCEPTED update in the same transaction as the identity write, so
a concurrent second accept loses and sees InvitationAlreadyAcceptedError.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    ConflictError,
    InvitationAlreadyAcceptedError,
    InvitationCancelledError,
    InvitationExpiredError,
    InvitationNotFoundError,
    RoleNotFoundError,
)
from auth.models import (
    AcceptResult,
    Identity,
    IdentityStatus,
    Invitation,
    InvitationStatus,
    InvitationSummary,
    Profile,
)
from auth.passwords import hash_password
from auth.store import IdentityStore

logger = logging.getLogger("ledgergate.invitations")

DEFAULT_TTL_HOURS = 72


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_invitation_token() -> str:
    return secrets.token_hex(32)


def build_invite_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/register?token={token}"


class InvitationEngine:
    def __init__(
        self,
        store: IdentityStore,
        *,
        default_ttl_hours: int = DEFAULT_TTL_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.default_ttl_hours = default_ttl_hours
        self.clock = clock

    def create(self, email: str, role_id: int, inviter_id: str, ttl_hours: int | None = None) -> Invitation:
        """Issue a PENDING invitation for email.

        Raises ConflictError if a real identity already owns the email or an
        unexpired PENDING invitation exists, RoleNotFoundError if role_id is
        unknown.
        """
        now = self.clock()
        self._check_no_conflict(email, now)

        if self.store.get_role_by_id(role_id) is None:
            raise RoleNotFoundError(reason=f"role_id={role_id}")

        invitation = Invitation(
            email=email.strip().lower(),
            token=generate_invitation_token(),
            role_id=role_id,
            invited_by=inviter_id,
            expires_at=now + timedelta(hours=ttl_hours or self.default_ttl_hours),
        )
        invitation.id = self.store.create_invitation(invitation)
        invitation.created_at = now
        invitation.updated_at = now
        logger.info("Invitation %s created for %s by %s", invitation.id, invitation.email, inviter_id)
        return invitation

    def validate(self, token: str) -> InvitationSummary:
        """Return what a usable token reveals, or raise why it is unusable."""
        invitation = self._usable(token)
        role = self.store.get_role_by_id(invitation.role_id)
        return InvitationSummary(
            email=invitation.email,
            role_id=invitation.role_id,
            role_name=role.name if role else "",
            expires_at=invitation.expires_at,
            invited_by=invitation.invited_by,
        )

    def accept(self, token: str, profile: Profile, password: str) -> AcceptResult:
        """Consume token and activate the invitee.

        A PENDING_VERIFICATION placeholder owning the email is promoted in
        place (created=False); otherwise a new ACTIVE identity is created.
        """
        invitation = self._usable(token)
        role = self.store.get_role_by_id(invitation.role_id)
        if role is None:
            raise RoleNotFoundError(reason=f"role_id={invitation.role_id}")

        existing = self.store.get_by_email(invitation.email)
        if existing is not None and existing.status != IdentityStatus.PENDING_VERIFICATION:
            raise ConflictError("User with this email already exists.", reason="identity_exists")

        identity = Identity(
            id=existing.id if existing else None,
            email=invitation.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            phone=profile.phone,
            department=profile.department,
            position=profile.position,
            password_hash=hash_password(password),
            status=IdentityStatus.ACTIVE,
            role_id=role.id,
            invited_by=invitation.invited_by,
        )
        promote = existing is not None
        try:
            claimed = self.store.accept_invitation(invitation.id, identity, promote=promote)
        except IntegrityError as exc:
            raise ConflictError("User with this email already exists.", reason="identity_exists_race") from exc
        if not claimed:
            raise InvitationAlreadyAcceptedError(reason="lost_claim")

        logger.info(
            "Invitation %s accepted; identity %s %s", invitation.id, identity.id, "promoted" if promote else "created"
        )
        return AcceptResult(user_id=identity.id, email=invitation.email, role=role.name, created=not promote)

    def cancel(self, invitation_id: str) -> Invitation:
        invitation = self._get(invitation_id)
        if invitation.status == InvitationStatus.ACCEPTED:
            raise InvitationAlreadyAcceptedError(reason="cancel_accepted")
        if invitation.status != InvitationStatus.CANCELLED:
            self.store.update_invitation(invitation_id, status=InvitationStatus.CANCELLED)
            invitation.status = InvitationStatus.CANCELLED
            logger.info("Invitation %s cancelled", invitation_id)
        return invitation

    def resend(self, invitation_id: str, ttl_hours: int | None = None) -> Invitation:
        """Rotate the token and restart the expiry window. The old token stops working.

        Refused with ConflictError under the same rules as create(), ignoring
        this invitation itself.
        """
        invitation = self._get(invitation_id)
        if invitation.status == InvitationStatus.ACCEPTED:
            raise InvitationAlreadyAcceptedError(reason="resend_accepted")
        self._check_no_conflict(invitation.email, self.clock(), exclude_id=invitation.id)
        invitation.token = generate_invitation_token()
        invitation.expires_at = self.clock() + timedelta(hours=ttl_hours or self.default_ttl_hours)
        invitation.status = InvitationStatus.PENDING
        self.store.update_invitation(
            invitation_id,
            token=invitation.token,
            expires_at=invitation.expires_at,
            status=invitation.status,
        )
        logger.info("Invitation %s resent to %s", invitation_id, invitation.email)
        return invitation

    def list(self, status: InvitationStatus | None = None, email: str | None = None) -> list[Invitation]:
        """List invitations, filtering on effective status (so EXPIRED works as a filter)."""
        now = self.clock()
        stored = None if status in (None, InvitationStatus.EXPIRED) else status
        invitations = self.store.list_invitations(status=stored, email=email)
        if status is None:
            return invitations
        return [i for i in invitations if i.effective_status(now) == status]

    def _check_no_conflict(self, email: str, now: datetime, exclude_id: str | None = None) -> None:
        """Raise ConflictError if email already has an identity or another live invitation."""
        existing = self.store.get_by_email(email)
        if existing is not None and existing.status != IdentityStatus.PENDING_VERIFICATION:
            raise ConflictError("User with this email already exists.", reason="identity_exists")
        for invitation in self.store.list_invitations(status=InvitationStatus.PENDING, email=email):
            if invitation.id != exclude_id and not invitation.is_expired(now):
                raise ConflictError("An active invitation already exists for this email.", reason="active_invitation")

    def _get(self, invitation_id: str) -> Invitation:
        invitation = self.store.get_invitation_by_id(invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(reason="unknown_id")
        return invitation

    def _usable(self, token: str) -> Invitation:
        invitation = self.store.get_invitation_by_token(token) if token else None
        if invitation is None:
            raise InvitationNotFoundError(reason="unknown_token")
        if invitation.status == InvitationStatus.ACCEPTED:
            raise InvitationAlreadyAcceptedError()
        if invitation.status == InvitationStatus.CANCELLED:
            raise InvitationCancelledError()
        if invitation.is_expired(self.clock()):
            raise InvitationExpiredError()
        return invitation
