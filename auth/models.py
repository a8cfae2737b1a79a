"""
auth/models.py -- Domain dataclasses for identity and access entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; the few properties here only derive values from the
record's own fields.

Timestamps are timezone-aware UTC datetimes. The store persists them as ISO
8601 strings and the row mappers parse them back.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class IdentityStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    LOCKED = "LOCKED"
    DISABLED = "DISABLED"
    DELETED = "DELETED"
    INVITED = "INVITED"
    PASSWORD_EXPIRED = "PASSWORD_EXPIRED"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class Identity:
    """An authenticatable account.

    email is always stored lower-cased; lookups normalize the same way, which
    is what makes the UNIQUE(email) index case-insensitive in practice.

    role_name is joined from the roles table on read and is not a column.
    version is bumped by the store on every write to the row.
    """

    email: str
    id: str | None = None
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None
    department: str | None = None
    position: str | None = None
    password_hash: str | None = None
    status: IdentityStatus = IdentityStatus.ACTIVE
    failed_attempt_count: int = 0
    locked_until: datetime | None = None
    role_id: int | None = None
    role_name: str = ""
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    password_changed_at: datetime | None = None
    invited_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


@dataclass
class Role:
    name: str
    id: int | None = None
    description: str | None = None
    is_system: bool = False


@dataclass
class Permission:
    code: str
    category: str
    id: int | None = None
    name: str = ""


@dataclass
class Invitation:
    """A single-use onboarding credential.

    status holds the stored lifecycle state. EXPIRED is never written by the
    engine; use effective_status() to get the state as of a given instant.
    """

    email: str
    token: str
    role_id: int
    invited_by: str
    expires_at: datetime
    id: str | None = None
    status: InvitationStatus = InvitationStatus.PENDING
    accepted_at: datetime | None = None
    accepted_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def effective_status(self, now: datetime) -> InvitationStatus:
        if self.status == InvitationStatus.PENDING and self.is_expired(now):
            return InvitationStatus.EXPIRED
        return self.status


@dataclass
class Session:
    """A login session record held in the shared cache.

    Owned exclusively by auth.sessions.SessionManager. Tokens carry only the
    session id (the `sid` claim).
    """

    id: str
    identity_id: str
    ip_address: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    email: str = ""
    role: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "email": self.email,
            "role": self.role,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            identity_id=data["identity_id"],
            email=data.get("email", ""),
            role=data.get("role", ""),
            ip_address=data.get("ip_address", ""),
            user_agent=data.get("user_agent", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, verified payload of an access or refresh token.

    permissions is the snapshot taken at issuance. It is not re-checked
    against the store until the token is re-issued.
    """

    subject: str
    role: str
    permissions: frozenset[str]
    session_id: str
    jti: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int


@dataclass
class InvitationSummary:
    """What validate() reveals about a usable invitation."""

    email: str
    role_id: int
    role_name: str
    expires_at: datetime
    invited_by: str


@dataclass
class AcceptResult:
    user_id: str
    email: str
    role: str
    created: bool = True


@dataclass
class LoginResult:
    identity: Identity
    permissions: frozenset[str]
    session: Session
    tokens: TokenPair


@dataclass
class Profile:
    """Profile fields applied when an invitation is accepted."""

    first_name: str
    last_name: str
    phone: str | None = None
    department: str | None = None
    position: str | None = None
