"""
api/routes/v1/invitations.py -- Invitation onboarding endpoints.

Routes:
  GET    /api/v1/invitations/validate?token=   -- check a token (public)
  POST   /api/v1/invitations/accept            -- register via token (public)
  POST   /api/v1/invitations                   -- invite an email (users:invite)
  GET    /api/v1/invitations                   -- list, ?status=&email= (users:invite)
  DELETE /api/v1/invitations/{id}              -- cancel (users:invite)
  POST   /api/v1/invitations/{id}/resend       -- new token and expiry (users:invite)

The raw token is returned only by create and resend, together with the
ready-made invite URL. Listing never exposes tokens.

accept answers 201 when a new identity was created and 200 when an existing
PENDING_VERIFICATION placeholder was promoted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    AcceptResponse,
    InvitationAccept,
    InvitationCreate,
    InvitationCreatedResponse,
    InvitationResend,
    InvitationResponse,
    InvitationValidateResponse,
)
from auth.dependencies import Principal, require_permission
from auth.invitations import InvitationEngine, build_invite_url
from auth.models import Invitation, InvitationStatus, Profile
from auth.permissions import USERS_INVITE

# Auth policy:
# - GET    /api/v1/invitations/validate:     public -- the token is the credential
# - POST   /api/v1/invitations/accept:       public -- the token is the credential
# - everything else:                          requires users:invite
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/invitations/validate", response_model=InvitationValidateResponse)
def validate_invitation(
    request: Request, token: str = Query(min_length=1, max_length=128)
) -> InvitationValidateResponse:
    """404 unknown token; 400 expired, accepted or cancelled."""
    engine: InvitationEngine = request.app.state.invitations
    summary = engine.validate(token)
    return InvitationValidateResponse(
        email=summary.email,
        role_id=summary.role_id,
        role_name=summary.role_name,
        invited_by=summary.invited_by,
        expires_at=summary.expires_at,
    )


@router.post("/invitations/accept", response_model=AcceptResponse, status_code=201)
def accept_invitation(request: Request, body: InvitationAccept) -> JSONResponse:
    engine: InvitationEngine = request.app.state.invitations
    profile = Profile(
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        department=body.department,
        position=body.position,
    )
    result = engine.accept(body.token, profile, body.password)
    content = AcceptResponse(user_id=result.user_id, email=result.email, role=result.role)
    return JSONResponse(
        status_code=201 if result.created else 200,
        content=content.model_dump(mode="json", by_alias=True),
    )


# ---------------------------------------------------------------------------
# Administration (users:invite)
# ---------------------------------------------------------------------------


@router.post("/invitations", response_model=InvitationCreatedResponse, status_code=201)
def create_invitation(
    request: Request,
    body: InvitationCreate,
    principal: Principal = Depends(require_permission(USERS_INVITE)),
) -> InvitationCreatedResponse:
    """409 if the email belongs to an identity or has an active invitation; 404 unknown role."""
    engine: InvitationEngine = request.app.state.invitations
    invitation = engine.create(body.email, body.role_id, principal.identity_id, ttl_hours=body.expires_in_hours)
    return _created_response(request, invitation)


@router.get("/invitations", response_model=list[InvitationResponse])
def list_invitations(
    request: Request,
    status: Optional[InvitationStatus] = Query(default=None),
    email: Optional[str] = Query(default=None, max_length=255),
    principal: Principal = Depends(require_permission(USERS_INVITE)),
) -> list[InvitationResponse]:
    engine: InvitationEngine = request.app.state.invitations
    now = datetime.now(timezone.utc)
    return [InvitationResponse.from_invitation(i, now) for i in engine.list(status=status, email=email)]


@router.delete("/invitations/{invitation_id}", response_model=InvitationResponse)
def cancel_invitation(
    request: Request,
    invitation_id: str,
    principal: Principal = Depends(require_permission(USERS_INVITE)),
) -> InvitationResponse:
    """400 if already accepted. Cancelling twice is a no-op."""
    engine: InvitationEngine = request.app.state.invitations
    invitation = engine.cancel(invitation_id)
    return InvitationResponse.from_invitation(invitation, datetime.now(timezone.utc))


@router.post("/invitations/{invitation_id}/resend", response_model=InvitationCreatedResponse)
def resend_invitation(
    request: Request,
    invitation_id: str,
    body: InvitationResend | None = None,
    principal: Principal = Depends(require_permission(USERS_INVITE)),
) -> InvitationCreatedResponse:
    """Issue a fresh token and expiry. The previous token stops working."""
    engine: InvitationEngine = request.app.state.invitations
    invitation = engine.resend(invitation_id, ttl_hours=body.expires_in_hours if body else None)
    return _created_response(request, invitation)


def _created_response(request: Request, invitation: Invitation) -> InvitationCreatedResponse:
    return InvitationCreatedResponse(
        id=invitation.id,
        email=invitation.email,
        token=invitation.token,
        expires_at=invitation.expires_at,
        invite_url=build_invite_url(request.app.state.settings.invite_base_url, invitation.token),
    )
