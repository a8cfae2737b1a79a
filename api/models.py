"""
API request and response models for LedgerGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, roleId, ...). Python attribute names
stay snake_case; the alias generator maps between them and populate_by_name
lets tests and handlers construct models with either spelling.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Identity, Invitation, Role, Session

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Loose on purpose: the store normalizes case, and deliverability is the
# inviter's concern. Rejects obvious garbage only.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt truncates at 72 bytes; 128 characters keeps inputs bounded.
PASSWORD_MAX = 128
PASSWORD_MIN = 8


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class RefreshRequest(_CamelModel):
    """Request body for POST /api/v1/auth/refresh. Falls back to the refresh_token cookie."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserSummary(_FrozenCamelModel):
    """Identity fields safe to return to the identity itself."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    status: str
    permissions: list[str]
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity, permissions) -> "UserSummary":
        return cls(
            id=identity.id,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            role=identity.role_name,
            status=identity.status.value,
            permissions=sorted(permissions),
            last_login_at=identity.last_login_at,
        )


class TokenResponse(_FrozenCamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    user: UserSummary


class MeResponse(UserSummary):
    session_id: str


class SessionResponse(_FrozenCamelModel):
    id: str
    ip_address: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: str) -> "SessionResponse":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_activity=session.last_activity,
            expires_at=session.expires_at,
            current=session.id == current_session_id,
        )


class RevokedSessionsResponse(_FrozenCamelModel):
    revoked: int


class MessageResponse(_FrozenCamelModel):
    message: str


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class InvitationCreate(_CamelModel):
    """Request body for POST /api/v1/invitations."""

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    role_id: int = Field(ge=1)
    expires_in_hours: Optional[int] = Field(default=None, ge=1, le=24 * 30)


class InvitationResend(_CamelModel):
    expires_in_hours: Optional[int] = Field(default=None, ge=1, le=24 * 30)


class InvitationAccept(_CamelModel):
    """Request body for POST /api/v1/invitations/accept."""

    token: str = Field(min_length=1, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    phone: Optional[str] = Field(default=None, max_length=50)
    department: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=100)


class InvitationCreatedResponse(_FrozenCamelModel):
    """Returned once on create and resend. The only place the token is exposed."""

    id: str
    email: str
    token: str
    expires_at: datetime
    invite_url: str


class InvitationResponse(_FrozenCamelModel):
    """Invitation as listed to administrators. Never includes the token."""

    id: str
    email: str
    role_id: int
    status: str
    invited_by: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    @classmethod
    def from_invitation(cls, invitation: Invitation, now: datetime) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            email=invitation.email,
            role_id=invitation.role_id,
            status=invitation.effective_status(now).value,
            invited_by=invitation.invited_by,
            expires_at=invitation.expires_at,
            created_at=invitation.created_at,
            accepted_at=invitation.accepted_at,
        )


class InvitationValidateResponse(_FrozenCamelModel):
    valid: bool = True
    email: str
    role_id: int
    role_name: str
    invited_by: str
    expires_at: datetime


class AcceptResponse(_FrozenCamelModel):
    user_id: str
    email: str
    role: str


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class RoleResponse(_FrozenCamelModel):
    id: int
    name: str
    description: Optional[str] = None
    is_system: bool
    permissions: list[str]

    @classmethod
    def from_role(cls, role: Role, permissions: list[str]) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            permissions=permissions,
        )


class PermissionsResponse(_FrozenCamelModel):
    user_id: str
    role: str
    permissions: list[str]


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
