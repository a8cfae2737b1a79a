"""
auth/authenticator.py -- Credential verification with brute-force lockout.

Order of checks (each failure is final):
  1. Unknown email                     -> IdentityNotFoundError
  2. locked_until in the future        -> AccountLockedError
  3. locked_until in the past          -> lazy unlock (counter and lock cleared)
  4. status LOCKED                     -> AccountLockedError
     status anything but ACTIVE        -> AccountInactiveError
  5. bcrypt mismatch                   -> counter +1, lock at threshold,
                                          PasswordMismatchError
     bcrypt match                      -> counter reset, last login stamped

The lock check runs before the password check, so a locked account rejects
the correct password too.

Timing: the unknown-email path still runs bcrypt against DUMMY_HASH, so
response time does not reveal which emails are registered. Both
IdentityNotFoundError and PasswordMismatchError render as the same 401.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import (
    AccountInactiveError,
    AccountLockedError,
    IdentityNotFoundError,
    PasswordMismatchError,
)
from auth.models import Identity, IdentityStatus
from auth.passwords import DUMMY_HASH, verify_password
from auth.store import IdentityStore

logger = logging.getLogger("ledgergate.auth")

DEFAULT_LOCKOUT_THRESHOLD = 5
DEFAULT_LOCKOUT_MINUTES = 15


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Authenticator:
    def __init__(
        self,
        store: IdentityStore,
        *,
        lockout_threshold: int = DEFAULT_LOCKOUT_THRESHOLD,
        lockout_minutes: int = DEFAULT_LOCKOUT_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lockout_threshold = lockout_threshold
        self.lockout_window = timedelta(minutes=lockout_minutes)
        self.clock = clock

    def authenticate(self, email: str, password: str, ip: str | None = None) -> Identity:
        """Verify email/password and return the Identity, or raise.

        Raises IdentityNotFoundError, AccountLockedError, AccountInactiveError
        or PasswordMismatchError.
        """
        identity = self.store.get_by_email(email)
        if identity is None:
            verify_password(password, DUMMY_HASH)
            logger.info("Login failed: unknown email")
            raise IdentityNotFoundError(reason="not_found")

        now = self.clock()
        if identity.locked_until is not None:
            if identity.locked_until > now:
                logger.warning("Login rejected: identity %s locked until %s", identity.id, identity.locked_until)
                raise AccountLockedError(reason="lockout_window")
            self.store.reset_lockout(identity.id)
            identity.failed_attempt_count = 0
            identity.locked_until = None

        if identity.status == IdentityStatus.LOCKED:
            raise AccountLockedError(reason="status_locked")
        if identity.status != IdentityStatus.ACTIVE:
            logger.info("Login rejected: identity %s status %s", identity.id, identity.status.value)
            raise AccountInactiveError(reason=identity.status.value.lower())

        if not verify_password(password, identity.password_hash):
            count, locked_until = self.store.record_failed_attempt(
                identity.id, self.lockout_threshold, now + self.lockout_window
            )
            if locked_until is not None:
                logger.warning(
                    "Identity %s locked after %d failed attempts (until %s)", identity.id, count, locked_until
                )
            else:
                logger.info("Login failed: bad password for identity %s (%d consecutive)", identity.id, count)
            raise PasswordMismatchError(reason="password_mismatch")

        self.store.record_successful_login(identity.id, ip)
        identity.failed_attempt_count = 0
        identity.locked_until = None
        identity.last_login_at = now
        identity.last_login_ip = ip
        logger.info("Login succeeded for identity %s", identity.id)
        return identity

    def verify_current_password(self, identity: Identity, password: str) -> bool:
        """Plain password check for change-password. Does not touch the lock counter."""
        return verify_password(password, identity.password_hash)
