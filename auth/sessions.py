"""
auth/sessions.py -- Login sessions held in the shared cache.

Each session is one JSON document at session:<id> with a native TTL, plus
membership in the per-identity index sessions:identity:<identity_id>. The
index lets "list my sessions" and "log out everywhere" avoid a keyspace scan;
only the metrics helpers (count_sessions, count_active_identities,
cleanup_expired) scan session:*.

The record carries its own expires_at. get() trusts that over the cache TTL:
a record past expires_at is deleted and reported as expired even if the cache
has not evicted it yet.

Layer rule: no imports from api/. The cache is injected.
"""

from __future__ import annotations

import logging
import math
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.errors import SessionExpiredError, SessionNotFoundError
from auth.models import Identity, Session

if TYPE_CHECKING:
    from cache.store import CacheStore

logger = logging.getLogger("ledgergate.sessions")

SESSION_PREFIX = "session:"
INDEX_PREFIX = "sessions:identity:"
DEFAULT_SESSION_TTL = 7 * 24 * 60 * 60  # matches the refresh token lifetime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    """256 bits of randomness, URL-safe."""
    return secrets.token_urlsafe(32)


class SessionManager:
    def __init__(
        self,
        cache: CacheStore,
        *,
        default_ttl_seconds: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.default_ttl = default_ttl_seconds
        self.clock = clock

    def create(
        self,
        identity: Identity,
        ip: str = "",
        user_agent: str = "",
        ttl_seconds: int | None = None,
    ) -> Session:
        ttl = ttl_seconds or self.default_ttl
        now = self.clock()
        session = Session(
            id=new_session_id(),
            identity_id=identity.id,
            email=identity.email,
            role=identity.role_name,
            ip_address=ip or "",
            user_agent=user_agent or "",
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        self._write(session, ttl)
        self.cache.add_member(INDEX_PREFIX + identity.id, session.id, ttl)
        logger.info("Session created for identity %s from %s", identity.id, session.ip_address or "-")
        return session

    def get(self, session_id: str) -> Session:
        """Return the live session or raise SessionNotFoundError / SessionExpiredError."""
        data = self.cache.get_json(SESSION_PREFIX + session_id)
        if data is None:
            raise SessionNotFoundError(reason="absent")
        session = Session.from_dict(data)
        if session.expires_at <= self.clock():
            self.delete(session_id, identity_id=session.identity_id)
            raise SessionExpiredError(reason="expires_at")
        return session

    def refresh(self, session_id: str, ttl_seconds: int | None = None) -> Session:
        """Slide expiry to now + ttl and stamp last_activity."""
        session = self.get(session_id)
        ttl = ttl_seconds or self.default_ttl
        now = self.clock()
        session.last_activity = now
        session.expires_at = now + timedelta(seconds=ttl)
        self._write(session, ttl)
        self.cache.add_member(INDEX_PREFIX + session.identity_id, session.id, ttl)
        return session

    def delete(self, session_id: str, identity_id: str | None = None) -> None:
        """Remove a session. Deleting an absent session is not an error."""
        if identity_id is None:
            data = self.cache.get_json(SESSION_PREFIX + session_id)
            identity_id = data.get("identity_id") if data else None
        self.cache.delete(SESSION_PREFIX + session_id)
        if identity_id:
            self.cache.remove_member(INDEX_PREFIX + identity_id, session_id)

    def list_by_identity(self, identity_id: str) -> list[Session]:
        """Live sessions for identity_id, oldest first. Prunes dead index entries."""
        now = self.clock()
        live: list[Session] = []
        stale: list[str] = []
        for session_id in self.cache.members(INDEX_PREFIX + identity_id):
            data = self.cache.get_json(SESSION_PREFIX + session_id)
            if data is None:
                stale.append(session_id)
                continue
            session = Session.from_dict(data)
            if session.expires_at <= now:
                self.cache.delete(SESSION_PREFIX + session_id)
                stale.append(session_id)
                continue
            live.append(session)
        if stale:
            self.cache.remove_member(INDEX_PREFIX + identity_id, *stale)
        return sorted(live, key=lambda s: s.created_at)

    def revoke_identity_sessions(self, identity_id: str, keep_session_id: str | None = None) -> int:
        """Delete every session of identity_id except keep_session_id. Returns the count."""
        session_ids = self.cache.members(INDEX_PREFIX + identity_id)
        doomed = [sid for sid in session_ids if sid != keep_session_id]
        if not doomed:
            return 0
        removed = self.cache.delete(*(SESSION_PREFIX + sid for sid in doomed))
        self.cache.remove_member(INDEX_PREFIX + identity_id, *doomed)
        logger.info("Revoked %d session(s) for identity %s", removed, identity_id)
        return removed

    # ------------------------------------------------------------------
    # Metrics and maintenance (keyspace scans)
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Delete records whose expires_at has passed but the cache still holds."""
        now = self.clock()
        removed = 0
        for key in self.cache.scan(SESSION_PREFIX + "*"):
            data = self.cache.get_json(key)
            if data is None:
                continue
            session = Session.from_dict(data)
            if session.expires_at <= now:
                self.delete(session.id, identity_id=session.identity_id)
                removed += 1
        if removed:
            logger.info("Cleaned up %d expired session(s)", removed)
        return removed

    def count_sessions(self) -> int:
        return sum(1 for _ in self.cache.scan(SESSION_PREFIX + "*"))

    def count_active_identities(self) -> int:
        now = self.clock()
        identities: set[str] = set()
        for key in self.cache.scan(SESSION_PREFIX + "*"):
            data = self.cache.get_json(key)
            if data is None:
                continue
            session = Session.from_dict(data)
            if session.expires_at > now:
                identities.add(session.identity_id)
        return len(identities)

    def _write(self, session: Session, ttl: int) -> None:
        self.cache.set_json(SESSION_PREFIX + session.id, session.to_dict(), ttl=max(1, math.ceil(ttl)))
