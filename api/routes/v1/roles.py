"""
api/routes/v1/roles.py -- Read-only role and permission endpoints.

Routes:
  GET /api/v1/roles                    -- roles with their permission codes (roles:read)
  GET /api/v1/users/{id}/permissions   -- resolved permissions of one identity (users:read)

/users/{id}/permissions resolves from the store, not from a token, so it
reflects role changes immediately.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import PermissionsResponse, RoleResponse
from auth.dependencies import Principal, require_permission
from auth.errors import NotFoundError
from auth.permissions import ROLES_READ, USERS_READ, PermissionResolver
from auth.store import IdentityStore

router = APIRouter()


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    principal: Principal = Depends(require_permission(ROLES_READ)),
) -> list[RoleResponse]:
    store: IdentityStore = request.app.state.identity_store
    return [RoleResponse.from_role(r, store.get_role_permission_codes(r.id)) for r in store.list_roles()]


@router.get("/users/{user_id}/permissions", response_model=PermissionsResponse)
def user_permissions(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_permission(USERS_READ)),
) -> PermissionsResponse:
    store: IdentityStore = request.app.state.identity_store
    identity = store.get_by_id(user_id)
    if identity is None:
        raise NotFoundError("User not found.", reason="unknown_identity")
    resolver: PermissionResolver = request.app.state.permissions
    return PermissionsResponse(
        user_id=identity.id,
        role=identity.role_name,
        permissions=sorted(resolver.resolve(identity.id)),
    )
